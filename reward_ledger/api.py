import logging
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from .models import (
    Account, AccountBalance, AccountStatusUpdate, ActivityHistoryResponse, ActivityType,
    ApplyRewardRequest, CompleteTaskRequest, CreateAccountRequest, DailyAction,
    EligibilityResponse, ReferralInfo, RequestContext, RewardResponse, SpinWheelRequest,
    SubmitWithdrawalRequest, SwapRequest, SwapResponse, TransitionWithdrawalRequest, WithdrawalRequest,
    WithdrawalResponse, WithdrawalStats,
)
from .service import (
    AccountInactiveError, AlreadyClaimedError, ConflictError, InsufficientActivityError, LedgerService,
    LedgerServiceError, NotFoundError, UpstreamError,
)
from .settings import RewardSettings, get_app_settings

app_settings = get_app_settings()
logging.basicConfig(level=app_settings.log_level.upper())
logger = logging.getLogger(__name__)

router = APIRouter()


def get_service(request: Request) -> LedgerService:
    return request.app.state.ledger_service


def get_request_context(
    request: Request,
    x_request_hash: Optional[str] = Header(default=None),
) -> RequestContext:
    return RequestContext(
        ip_address=request.client.host if request.client else "unknown",
        request_hash=x_request_hash,
    )


def _http_error(e: LedgerServiceError) -> HTTPException:
    if isinstance(e, UpstreamError):
        logger.exception("Upstream failure: %s", e)
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"success": False, "error": "Internal server error", "code": e.code},
        )

    detail: dict[str, Any] = {"success": False, "error": str(e), "code": e.code}
    if isinstance(e, AlreadyClaimedError) and e.next_available_at:
        detail["next_available_at"] = e.next_available_at.isoformat()
    if isinstance(e, InsufficientActivityError):
        detail["required"] = e.required
        detail["current"] = e.current

    if isinstance(e, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(e, ConflictError):
        code = status.HTTP_409_CONFLICT
    elif isinstance(e, AccountInactiveError):
        code = status.HTTP_403_FORBIDDEN
    else:
        code = status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=detail)


@router.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "reward-ledger"}


@router.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def create_account(
    request: CreateAccountRequest,
    context: RequestContext = Depends(get_request_context),
    service: LedgerService = Depends(get_service),
):
    try:
        return service.create_account(request, context)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/accounts/{telegram_id}", response_model=Account, tags=["Accounts"])
def get_account(telegram_id: str, service: LedgerService = Depends(get_service)):
    try:
        return service.get_account(telegram_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.delete("/accounts/{telegram_id}", status_code=status.HTTP_204_NO_CONTENT, tags=["Accounts"])
def delete_account(telegram_id: str, service: LedgerService = Depends(get_service)):
    try:
        service.delete_account(telegram_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.put("/accounts/{telegram_id}/status", response_model=Account, tags=["Accounts"])
def set_account_status(
    telegram_id: str,
    update: AccountStatusUpdate,
    service: LedgerService = Depends(get_service),
):
    try:
        return service.set_account_status(telegram_id, update.status, update.reason)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/accounts/{telegram_id}/balance", response_model=AccountBalance, tags=["Accounts"])
def get_balance(telegram_id: str, service: LedgerService = Depends(get_service)):
    try:
        return service.get_balance(telegram_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/accounts/{telegram_id}/referral", response_model=ReferralInfo, tags=["Accounts"])
def get_referral_info(telegram_id: str, service: LedgerService = Depends(get_service)):
    try:
        return service.get_referral_info(telegram_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/accounts/{telegram_id}/activities", response_model=ActivityHistoryResponse, tags=["Activity"])
def get_activity_history(
    telegram_id: str,
    type: Optional[ActivityType] = None,
    page: int = 1,
    limit: int = 20,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    service: LedgerService = Depends(get_service),
):
    try:
        return service.get_activity_history(telegram_id, type, page, limit, start_date, end_date)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/accounts/{telegram_id}/eligibility/{action}", response_model=EligibilityResponse, tags=["Rewards"])
def check_eligibility(telegram_id: str, action: DailyAction, service: LedgerService = Depends(get_service)):
    try:
        return service.check_daily_eligibility(telegram_id, action)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/accounts/{telegram_id}/rewards", response_model=RewardResponse, tags=["Rewards"])
def apply_reward(
    telegram_id: str,
    request: ApplyRewardRequest,
    context: RequestContext = Depends(get_request_context),
    service: LedgerService = Depends(get_service),
):
    try:
        return service.apply_reward(
            telegram_id, request.type, request.amount, request.metadata,
            action=request.action, description=request.description, context=context,
        )
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/accounts/{telegram_id}/spin", response_model=RewardResponse, tags=["Rewards"])
def spin_wheel(
    telegram_id: str,
    request: SpinWheelRequest,
    context: RequestContext = Depends(get_request_context),
    service: LedgerService = Depends(get_service),
):
    try:
        return service.spin_wheel(telegram_id, request.reward, context)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/accounts/{telegram_id}/check-in", response_model=RewardResponse, tags=["Rewards"])
def daily_check_in(
    telegram_id: str,
    context: RequestContext = Depends(get_request_context),
    service: LedgerService = Depends(get_service),
):
    try:
        return service.daily_check_in(telegram_id, context)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/accounts/{telegram_id}/ads", response_model=RewardResponse, tags=["Rewards"])
def watch_ad(
    telegram_id: str,
    context: RequestContext = Depends(get_request_context),
    service: LedgerService = Depends(get_service),
):
    try:
        return service.watch_ad(telegram_id, context)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/accounts/{telegram_id}/tasks/{task_id}", response_model=RewardResponse, tags=["Rewards"])
def complete_task(
    telegram_id: str,
    task_id: str,
    request: CompleteTaskRequest,
    context: RequestContext = Depends(get_request_context),
    service: LedgerService = Depends(get_service),
):
    try:
        return service.complete_task(telegram_id, task_id, request.reward, context)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/accounts/{telegram_id}/withdrawals", response_model=list[WithdrawalRequest], tags=["Withdrawals"])
def list_withdrawals(telegram_id: str, limit: int = 100, service: LedgerService = Depends(get_service)):
    try:
        return service.list_withdrawals(telegram_id, limit)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/accounts/{telegram_id}/withdrawals/stats", response_model=WithdrawalStats, tags=["Withdrawals"])
def get_withdrawal_stats(telegram_id: str, service: LedgerService = Depends(get_service)):
    try:
        return service.get_withdrawal_stats(telegram_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/accounts/{telegram_id}/swap", response_model=SwapResponse, status_code=status.HTTP_201_CREATED, tags=["Swaps"])
def swap(
    telegram_id: str,
    request: SwapRequest,
    context: RequestContext = Depends(get_request_context),
    service: LedgerService = Depends(get_service),
):
    try:
        return service.swap(telegram_id, request, context)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/withdrawals", response_model=WithdrawalResponse, status_code=status.HTTP_201_CREATED, tags=["Withdrawals"])
def submit_withdrawal(
    request: SubmitWithdrawalRequest,
    context: RequestContext = Depends(get_request_context),
    service: LedgerService = Depends(get_service),
):
    try:
        return service.submit_withdrawal(request, context)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/withdrawals/pending", response_model=list[WithdrawalRequest], tags=["Withdrawals"])
def list_pending_withdrawals(service: LedgerService = Depends(get_service)):
    return service.list_pending_withdrawals()


@router.get("/withdrawals/{withdrawal_id}", response_model=WithdrawalRequest, tags=["Withdrawals"])
def get_withdrawal(withdrawal_id: UUID, service: LedgerService = Depends(get_service)):
    try:
        return service.get_withdrawal(withdrawal_id)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.post("/withdrawals/{withdrawal_id}/transition", response_model=WithdrawalResponse, tags=["Withdrawals"])
def transition_withdrawal(
    withdrawal_id: UUID,
    request: TransitionWithdrawalRequest,
    context: RequestContext = Depends(get_request_context),
    service: LedgerService = Depends(get_service),
):
    try:
        return service.transition_withdrawal(withdrawal_id, request, context)
    except LedgerServiceError as e:
        raise _http_error(e)


@router.get("/settings", response_model=RewardSettings, tags=["System"])
def get_settings(service: LedgerService = Depends(get_service)):
    return service.settings


@router.put("/settings", response_model=RewardSettings, tags=["System"])
def update_settings(updates: dict[str, Any] = Body(...), service: LedgerService = Depends(get_service)):
    try:
        return service.update_settings(updates)
    except LedgerServiceError as e:
        raise _http_error(e)


def create_app(service: Optional[LedgerService] = None, root_path: Optional[str] = None) -> FastAPI:
    application = FastAPI(
        title="Reward Ledger API",
        description="Reward balances, daily-gated claims and withdrawal lifecycle for the earn-rewards mini app",
        version="1.0.0",
        root_path=app_settings.api_root_path if root_path is None else root_path,
    )
    application.add_middleware(
        CORSMiddleware,
        allow_origins=app_settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    application.state.ledger_service = service or LedgerService(
        settings=RewardSettings.from_app_settings(app_settings),
    )
    application.include_router(router)
    return application


app = create_app()
