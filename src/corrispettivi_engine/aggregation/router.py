"""Daily report API router."""

from fastapi import APIRouter, Depends, HTTPException

from corrispettivi_engine.aggregation.engine import ReportKey
from corrispettivi_engine.aggregation.schemas import DailyReportResponse, OutcomeRequest
from corrispettivi_engine.authority.client import Outcome
from corrispettivi_engine.common.exceptions import NotFoundError
from corrispettivi_engine.common.security import require_api_key

router = APIRouter()


def _get_service():
    from corrispettivi_engine.deps import get_aggregation_service
    return get_aggregation_service()


def _get_db():
    from corrispettivi_engine.deps import get_db
    return get_db()


@router.get(
    "/daily-reports/{vat_number}/{device_id}/{reference_date}",
    response_model=DailyReportResponse,
)
async def get_daily_report(
    vat_number: str,
    device_id: str,
    reference_date: str,
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    try:
        async with db.get_session() as session:
            report = await svc.get_report(
                session, ReportKey(vat_number, device_id, reference_date),
            )
            return DailyReportResponse.model_validate(report)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)


@router.post(
    "/daily-reports/{vat_number}/{device_id}/{reference_date}/outcome",
    response_model=DailyReportResponse,
)
async def record_outcome(
    vat_number: str,
    device_id: str,
    reference_date: str,
    body: OutcomeRequest,
    _=Depends(require_api_key),
):
    svc = _get_service()
    db = _get_db()
    outcome = Outcome(status=body.status, code=body.code, description=body.description)
    try:
        async with db.get_session() as session:
            report = await svc.record_outcome(
                session, ReportKey(vat_number, device_id, reference_date), outcome,
            )
            return DailyReportResponse.model_validate(report)
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
