"""
Usage endpoint.
Reports the primary provider's monthly budget.
"""
from fastapi import APIRouter, Depends

from app.api.deps import get_usage_ledger
from app.schemas.flight import UsageResponse
from app.services.budget.usage_ledger import UsageLedger, format_usage_message

router = APIRouter()


@router.get("", response_model=UsageResponse)
async def get_usage(ledger: UsageLedger = Depends(get_usage_ledger)):
    usage = await ledger.get_usage()
    return UsageResponse(
        month=usage.month,
        used=usage.used,
        limit=usage.limit,
        remaining=usage.remaining,
        polling_enabled=await ledger.is_polling_enabled(),
        message=format_usage_message(usage.used, usage.limit)
    )
