"""
Report API Endpoints

Per exam/school/grade/subject statistics and the derived difficulty report.
"""

from typing import Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
import structlog

from ljk_analytics.aggregation.difficulty import SubjectReport, build_report
from ljk_analytics.aggregation.increments import GradeSubjectKey
from ljk_analytics.aggregation.reader import AggregateReader
from ljk_analytics.aggregation.schemas import GradeSubjectSnapshot
from ljk_analytics.config import get_settings
from ljk_analytics.serving.api.dependencies import get_reader
from ljk_analytics.serving.cache import reports_cache

router = APIRouter()
logger = structlog.get_logger(__name__)

STATS_PATH = "/exams/{exam_id}/schools/{school_id}/grades/{grade_id}/subjects/{subject_id}"


class AnswerKeyRequest(BaseModel):
    """Question number -> correct option"""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    answer_key: Dict[str, str] = Field(default_factory=dict)


async def _load_stats(reader: AggregateReader, key: GradeSubjectKey) -> GradeSubjectSnapshot:
    stats = await reader.grade_subject_stats(key)
    if stats is None:
        raise HTTPException(status_code=404, detail=f"No statistics for {key.path}")
    return stats


@router.get(STATS_PATH + "/stats", response_model=GradeSubjectSnapshot)
async def get_grade_subject_stats(
    exam_id: str,
    school_id: str,
    grade_id: str,
    subject_id: str,
    reader: AggregateReader = Depends(get_reader),
) -> GradeSubjectSnapshot:
    """Raw tallies as stored"""
    key = GradeSubjectKey(exam_id=exam_id, school_id=school_id, grade_id=grade_id, subject_id=subject_id)
    return await _load_stats(reader, key)


@router.get(STATS_PATH + "/report", response_model=SubjectReport)
async def get_report(
    exam_id: str,
    school_id: str,
    grade_id: str,
    subject_id: str,
    reader: AggregateReader = Depends(get_reader),
):
    """
    Difficulty report of one grade and subject.

    Served from the report cache for a few seconds when Redis is available.
    """
    key = GradeSubjectKey(exam_id=exam_id, school_id=school_id, grade_id=grade_id, subject_id=subject_id)
    ttl = get_settings().cache.report_ttl

    if ttl:
        cached = await reports_cache.get(key.path)
        if cached is not None:
            logger.debug("Report cache hit", path=key.path)
            return cached

    report = build_report(await _load_stats(reader, key))
    if ttl:
        await reports_cache.set(key.path, report.model_dump(mode="json"), ttl=ttl)
    return report


@router.post(STATS_PATH + "/report", response_model=SubjectReport)
async def post_report_with_answer_key(
    exam_id: str,
    school_id: str,
    grade_id: str,
    subject_id: str,
    payload: AnswerKeyRequest,
    reader: AggregateReader = Depends(get_reader),
) -> SubjectReport:
    """Difficulty report with the answer-key option flagged in each choice distribution"""
    key = GradeSubjectKey(exam_id=exam_id, school_id=school_id, grade_id=grade_id, subject_id=subject_id)
    return build_report(await _load_stats(reader, key), answer_key=payload.answer_key)
