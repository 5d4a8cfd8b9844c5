"""
extensions.py - Flask Extensions
Initialize Flask extensions here to avoid circular imports.
Extensions are created here but initialized in app.py with init_app().
"""

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager

# Database ORM
# Schemes, weights, scores, compute runs and audit events all live here
db = SQLAlchemy()

# Database Migration Tool
# Usage: flask db init, flask db migrate, flask db upgrade
migrate = Migrate()

# Request identity
# The host application authenticates; we only load the user for each request
login_manager = LoginManager()
