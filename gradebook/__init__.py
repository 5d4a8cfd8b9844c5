"""
gradebook - Grade Computation Engine
Scheme configuration, weight-profile resolution, score aggregation,
transmutation and compute runs.
"""
