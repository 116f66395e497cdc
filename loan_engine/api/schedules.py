"""
Schedule preview endpoint
"""

from fastapi import APIRouter, Depends

from .dependencies import LoanSystem, get_loan_system
from .schemas import SchedulePreviewRequest, serialize_entry
from ..schedule import generate_schedule, summarize_schedule


router = APIRouter()


@router.post("/preview")
async def preview_schedule(
    request: SchedulePreviewRequest,
    system: LoanSystem = Depends(get_loan_system)
):
    """Generate a schedule for proposed terms without storing anything"""
    terms = request.to_terms(system.clock.today())
    schedule = generate_schedule(terms)
    return {
        "terms": terms.to_dict(),
        "schedule": [serialize_entry(entry) for entry in schedule],
        "summary": summarize_schedule(schedule).to_dict(),
    }
