"""
Read-Side Schemas

Snapshots of the aggregate tables as handed to dashboards and reports.
"""

from datetime import date, datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field


class QuestionTally(BaseModel):
    """Stored tally of one question; absent fields read as zero"""
    blank: int = 0
    correct: int = 0
    incorrect: int = 0
    choices: Dict[str, int] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.correct + self.incorrect + self.blank


class GrowthPoint(BaseModel):
    """Users created on one day"""
    date: date
    count: int


class DashboardSnapshot(BaseModel):
    """Global dashboard totals plus the recent growth series"""
    total_user: int = 0
    total_ljk: int = 0
    updated_at: Optional[datetime] = None
    growth: List[GrowthPoint] = Field(default_factory=list)


class SchoolSnapshot(BaseModel):
    """Staff counter of one school"""
    school_id: str
    total_teacher: int = 0
    updated_at: Optional[datetime] = None


class GradeSubjectSnapshot(BaseModel):
    """Per exam/school/grade/subject statistics document"""
    exam_id: str
    school_id: str
    grade_id: str
    subject_id: str
    total_answer: int = 0
    detail: Dict[str, QuestionTally] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None
