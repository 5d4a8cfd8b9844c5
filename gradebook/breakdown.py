"""
Typed audit record stored with every computed grade.

Stored as JSON on ComputedGrade.breakdown. from_dict() ignores unknown keys
and fills optional fields with their defaults, so records written by older
versions keep loading.
"""

from dataclasses import asdict, dataclass, field, fields
from typing import Dict, List, Optional

BREAKDOWN_SCHEMA_VERSION = 1


@dataclass
class ComponentBreakdown:
    component_id: int
    component_code: str
    component_label: str
    raw_total: float
    max_total: float
    percent: float
    weight_percent: float
    weighted_score: float
    status_counts: Dict[str, int]
    excluded_max_points: float = 0.0

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class Breakdown:
    components: List[ComponentBreakdown]
    initial_grade: float
    final_numeric_grade: float
    rounding_mode: str
    weight_policy: str
    total_weight: float
    computation_method: str
    scheme_id: int
    scheme_version: int
    as_of: str
    section_id: int
    school_year_id: int
    term_period: str
    initial_grade_key: Optional[float] = None
    transmuted_grade: Optional[float] = None
    transmutation_table_id: Optional[int] = None
    transmutation_version: Optional[int] = None
    weight_profile_id: Optional[int] = None
    classification_used: Optional[str] = None
    classification_source: Optional[str] = None
    classification_is_fallback: bool = False
    section_subject_offering_id: Optional[int] = None
    subject_id: Optional[int] = None
    subject_code: Optional[str] = None
    subject_name: Optional[str] = None
    schema_version: int = field(default=BREAKDOWN_SCHEMA_VERSION)

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        values['components'] = [ComponentBreakdown.from_dict(c) for c in data.get('components', [])]
        return cls(**values)

    def component(self, code):
        """Component entry by code, or None"""
        return next((c for c in self.components if c.component_code == code), None)
