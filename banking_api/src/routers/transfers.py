"""
Transfers and accounts router.

Customers move money between accounts and read their own balances and
ledgers. Back-office users with read:all_accounts can read any account;
manage:accounts is needed to open accounts and post deposits.
"""

import structlog
from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from banking_api.src.dependencies import (
    ensure_account_access,
    get_audit_context,
    get_current_active_user,
    get_transaction_manager,
    require_permission,
)
from banking_api.src.models.accounts import (
    AccountCreateRequest,
    AccountRecord,
    AccountStatement,
    DepositRequest,
    LedgerPage,
    TransferRecord,
    TransferRequest,
)
from banking_api.src.models.audit import AuditContext
from banking_api.src.models.auth import CurrentUser, ErrorResponse, Permission
from banking_api.src.services.auth_service import has_permission
from banking_api.src.services.transaction_manager import TransactionManager

logger = structlog.get_logger(__name__)

router = APIRouter(
    tags=["Transfers"],
    responses={
        401: {"model": ErrorResponse, "description": "Unauthorized"},
        403: {"model": ErrorResponse, "description": "Forbidden"},
        404: {"model": ErrorResponse, "description": "Not Found"},
        503: {"model": ErrorResponse, "description": "Database unavailable"}
    }
)


# ============================================================================
# TRANSFER ENDPOINTS
# ============================================================================


@router.post(
    "/transfers",
    response_model=TransferRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Create Transfer",
    description="""
    Move money from one of your accounts to another account.

    The source account is debited the amount plus any fee; the destination
    is credited the amount. Sending the same Idempotency-Key again returns
    the original transfer instead of moving money twice.

    **Error Responses:**
    - 400: Insufficient funds, currency mismatch, limit exceeded or bad input
    - 403: Not your account, or blocked by compliance screening
    - 404: Account not found
    - 409: Idempotency key reused for a different transfer
    """,
    responses={
        400: {"model": ErrorResponse, "description": "Rejected transfer"},
        409: {"model": ErrorResponse, "description": "Conflict"}
    }
)
async def create_transfer(
    transfer_request: TransferRequest,
    idempotency_key: Optional[str] = Header(None, alias="Idempotency-Key", max_length=128),
    current_user: CurrentUser = Depends(require_permission(Permission.CREATE_TRANSFERS)),
    transaction_manager: TransactionManager = Depends(get_transaction_manager),
    context: AuditContext = Depends(get_audit_context)
) -> TransferRecord:
    source = await transaction_manager.get_account(transfer_request.from_account_id)
    ensure_account_access(current_user, source.user_id)

    return await transaction_manager.execute_transfer(
        from_account_id=transfer_request.from_account_id,
        to_account_id=transfer_request.to_account_id,
        amount=transfer_request.amount,
        currency=transfer_request.currency,
        description=transfer_request.description,
        idempotency_key=idempotency_key,
        user_id=current_user.id,
        audit_context=context,
        from_country=transfer_request.from_country or current_user.country,
        to_country=transfer_request.to_country,
        user_tier=current_user.fee_tier,
    )


@router.get("/transfers/{transfer_id}", response_model=TransferRecord, summary="Get Transfer")
async def get_transfer(
    transfer_id: UUID,
    current_user: CurrentUser = Depends(get_current_active_user),
    transaction_manager: TransactionManager = Depends(get_transaction_manager)
) -> TransferRecord:
    transfer = await transaction_manager.get_transfer(transfer_id)
    if has_permission(current_user.roles, Permission.READ_ALL_ACCOUNTS):
        return transfer

    for account_id in (transfer.from_account_id, transfer.to_account_id):
        if account_id is None:
            continue
        account = await transaction_manager.get_account(account_id)
        if account.user_id == current_user.id:
            return transfer

    # Same answer as an unknown id
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Transfer not found")


# ============================================================================
# ACCOUNT ENDPOINTS
# ============================================================================


@router.get(
    "/accounts",
    response_model=List[AccountRecord],
    summary="List Accounts",
    description="Your accounts. Callers with read:all_accounts may pass user_id to list another user's."
)
async def list_accounts(
    user_id: Optional[UUID] = Query(None),
    current_user: CurrentUser = Depends(get_current_active_user),
    transaction_manager: TransactionManager = Depends(get_transaction_manager)
) -> List[AccountRecord]:
    owner_id = user_id or current_user.id
    ensure_account_access(current_user, owner_id)
    return await transaction_manager.list_accounts_for_user(owner_id)


@router.get("/accounts/{account_id}", response_model=AccountRecord, summary="Get Account")
async def get_account(
    account_id: UUID,
    current_user: CurrentUser = Depends(get_current_active_user),
    transaction_manager: TransactionManager = Depends(get_transaction_manager)
) -> AccountRecord:
    account = await transaction_manager.get_account(account_id)
    ensure_account_access(current_user, account.user_id)
    return account


@router.get("/accounts/{account_id}/ledger", response_model=LedgerPage, summary="Account Ledger")
async def get_account_ledger(
    account_id: UUID,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    current_user: CurrentUser = Depends(get_current_active_user),
    transaction_manager: TransactionManager = Depends(get_transaction_manager)
) -> LedgerPage:
    account = await transaction_manager.get_account(account_id)
    ensure_account_access(current_user, account.user_id)
    return await transaction_manager.get_account_ledger(account_id, limit=limit, offset=offset)


@router.get(
    "/accounts/{account_id}/statement",
    response_model=AccountStatement,
    summary="Monthly Statement",
    description="Opening and closing balances, credit and debit totals and the ledger entries of one month."
)
async def get_account_statement(
    account_id: UUID,
    month: Optional[str] = Query(
        None, pattern=r"^\d{4}-(0[1-9]|1[0-2])$", description="YYYY-MM, defaults to the current month"
    ),
    current_user: CurrentUser = Depends(get_current_active_user),
    transaction_manager: TransactionManager = Depends(get_transaction_manager)
) -> AccountStatement:
    account = await transaction_manager.get_account(account_id)
    ensure_account_access(current_user, account.user_id)

    if month is None:
        now = datetime.now(timezone.utc)
        year, month_number = now.year, now.month
    else:
        year, month_number = (int(part) for part in month.split("-"))
    return await transaction_manager.generate_statement(account_id, year, month_number)


# ============================================================================
# ADMIN ACCOUNT ENDPOINTS
# ============================================================================


@router.post(
    "/admin/accounts",
    response_model=AccountRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Open Account",
    responses={409: {"model": ErrorResponse, "description": "User already holds this currency"}}
)
async def open_account(
    create_request: AccountCreateRequest,
    admin: CurrentUser = Depends(require_permission(Permission.MANAGE_ACCOUNTS)),
    transaction_manager: TransactionManager = Depends(get_transaction_manager),
    context: AuditContext = Depends(get_audit_context)
) -> AccountRecord:
    return await transaction_manager.open_account(
        create_request.user_id,
        create_request.currency,
        opened_by=admin.id,
        audit_context=context,
    )


@router.post(
    "/admin/accounts/{account_id}/deposit",
    response_model=TransferRecord,
    status_code=status.HTTP_201_CREATED,
    summary="Deposit Funds"
)
async def deposit(
    account_id: UUID,
    deposit_request: DepositRequest,
    admin: CurrentUser = Depends(require_permission(Permission.MANAGE_ACCOUNTS)),
    transaction_manager: TransactionManager = Depends(get_transaction_manager),
    context: AuditContext = Depends(get_audit_context)
) -> TransferRecord:
    logger.info("deposit_requested", account_id=str(account_id), admin_id=str(admin.id))
    return await transaction_manager.deposit(
        account_id,
        deposit_request.amount,
        user_id=admin.id,
        description=deposit_request.description,
        audit_context=context,
    )
