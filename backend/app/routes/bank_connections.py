"""
Bank Connection Routes

User-facing endpoints for:
- Listing supported banks
- Connecting a bank and handling the OAuth callback
- Syncing one or all connections
- Disconnecting banks
- Importing CSV statements
"""

import json
import logging
from typing import List, Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import RedirectResponse
from pydantic import ValidationError
from sqlalchemy.orm import Session

from backend.config import get_settings
from backend.database import get_db
from backend.app import models, schemas
from backend.app.auth import get_current_active_user
from backend.app.bank_integration.csv_import import validate_csv_upload
from backend.app.bank_integration.exceptions import BankErrorCode, BankIntegrationError
from backend.app.bank_integration.schemas import CSVImportConfig, ConnectionSyncResult, SyncOptions
from backend.app.bank_integration.service import create_connection_manager


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bank-connections", tags=["bank-connections"])


def _sync_response(result: ConnectionSyncResult) -> dict:
    if result.skipped:
        sync_status, message = "skipped", "Synced recently; next sync is scheduled"
    elif not result.success:
        sync_status, message = "failed", result.errors[0] if result.errors else None
    elif result.partial:
        sync_status, message = "partial", f"{len(result.errors)} errors occurred"
    else:
        sync_status, message = "success", None

    return dict(
        status=sync_status,
        accounts_imported=result.accounts_imported,
        transactions_imported=result.transactions_imported,
        duplicates=result.duplicates_skipped,
        errors=result.errors,
        message=message,
        last_sync_time=result.last_sync_time
    )


def _sync_options(sync_params: Optional[schemas.SyncParams], request: Request) -> SyncOptions:
    sync_params = sync_params or schemas.SyncParams()
    return SyncOptions(
        force=sync_params.force,
        days_back=sync_params.days_back,
        account_ids=sync_params.account_ids,
        customer_ip=request.client.host if request.client else None
    )


@router.get("/banks", response_model=List[schemas.BankInfo])
def list_available_banks(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """List banks that can be connected."""
    return create_connection_manager(db).get_available_banks()


@router.post("/connect", response_model=schemas.OAuthInitiateResponse)
def initiate_bank_connection(
    connection_request: schemas.BankConnectionCreate,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Initiate OAuth flow for connecting a bank.

    Returns the authorization URL the user should be redirected to.

    Example:
        POST /bank-connections/connect
        {
            "bank_code": "o3bank"
        }

        Response:
        {
            "authorization_url": "https://auth1.o3bankmodel.com:4101/auth?...",
            "state_token": "abc123..."
        }
    """
    manager = create_connection_manager(db)
    try:
        result = manager.initiate_connection(current_user.id, connection_request.bank_code)
    except BankIntegrationError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=e.message
        )

    return schemas.OAuthInitiateResponse(
        authorization_url=result['auth_url'],
        state_token=result['state']
    )


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    state: str = Query(..., description="CSRF state token"),
    code: Optional[str] = Query(None, description="Authorization code"),
    error: Optional[str] = Query(None, description="Error returned by the bank"),
    db: Session = Depends(get_db)
):
    """
    OAuth callback endpoint.

    The bank redirects the user here after authorization. The code is
    exchanged for tokens, the connection is stored and synced, and the
    user is sent back to the frontend with the outcome.
    """
    frontend_url = get_settings().frontend_url

    if error or not code:
        query = urlencode({'error': 'authorization_denied', 'message': error or 'No authorization code'})
        return RedirectResponse(url=f"{frontend_url}/bank-connections?{query}")

    manager = create_connection_manager(db)
    pending = manager.resolve_state(state)
    if pending is None:
        query = urlencode({'error': 'invalid_state', 'message': 'Invalid or expired state token'})
        return RedirectResponse(url=f"{frontend_url}/bank-connections?{query}")

    user_id, bank_code = pending
    result = await manager.complete_connection(
        user_id,
        bank_code,
        code,
        state,
        customer_ip=request.client.host if request.client else None
    )

    if not result.success:
        error_kind = 'invalid_state' if result.error_code == BankErrorCode.INVALID_STATE.value else 'connection_failed'
        query = urlencode({'error': error_kind, 'message': result.error or ''})
        return RedirectResponse(url=f"{frontend_url}/bank-connections?{query}")

    query = urlencode({
        'connected': bank_code,
        'accounts': result.accounts_found,
        'transactions': result.transactions_found
    })
    return RedirectResponse(url=f"{frontend_url}/bank-connections?{query}")


@router.get("/status", response_model=List[schemas.ConnectionStatus])
def get_connection_statuses(
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Status of every stored bank connection for the current user."""
    statuses = create_connection_manager(db).get_connection_statuses(current_user.id)
    return [s.model_dump() for s in statuses]


@router.post("/sync-all", response_model=List[schemas.BankSyncResponse])
async def sync_all_banks(
    request: Request,
    sync_params: Optional[schemas.SyncParams] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Sync every active connection in turn."""
    manager = create_connection_manager(db)
    summaries = await manager.sync_all_banks(current_user.id, _sync_options(sync_params, request))
    return [
        schemas.BankSyncResponse(bank_code=s.bank_code, **_sync_response(s.result))
        for s in summaries
    ]


@router.post("/{bank_code}/sync", response_model=schemas.SyncResponse)
async def manual_sync(
    bank_code: str,
    request: Request,
    sync_params: Optional[schemas.SyncParams] = None,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Manually trigger a sync for one connection.

    Example:
        POST /bank-connections/o3bank/sync
        {
            "force": true,
            "days_back": 30
        }

        Response:
        {
            "status": "success",
            "accounts_imported": 2,
            "transactions_imported": 15,
            "duplicates": 3,
            "errors": [],
            "message": null
        }
    """
    manager = create_connection_manager(db)
    record = manager.vault.get_record(current_user.id, bank_code)
    if record is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )

    result = await manager.sync_bank_data(current_user.id, bank_code, _sync_options(sync_params, request))
    return schemas.SyncResponse(**_sync_response(result))


@router.get("/{bank_code}/logs", response_model=List[schemas.BankSyncLog])
def get_sync_logs(
    bank_code: str,
    limit: int = Query(50, ge=1, le=100),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Recent sync history for a connection, newest first."""
    return db.query(models.BankSyncLog).filter(
        models.BankSyncLog.user_id == current_user.id,
        models.BankSyncLog.bank_code == bank_code
    ).order_by(models.BankSyncLog.started_at.desc()).limit(limit).all()


@router.delete("/{bank_code}")
async def disconnect_bank(
    bank_code: str,
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """
    Disconnect a bank.

    Revokes the OAuth token at the bank when possible and deletes the
    stored credentials.
    """
    manager = create_connection_manager(db)
    removed = await manager.disconnect_bank(current_user.id, bank_code)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Connection not found"
        )

    return {"message": "Bank disconnected successfully"}


@router.post("/import-csv/{account_id}", response_model=schemas.CSVImportResponse)
async def import_csv(
    account_id: int,
    file: UploadFile = File(...),
    mapping_config: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    current_user: models.User = Depends(get_current_active_user)
):
    """Import a CSV statement into one of the user's accounts."""
    contents = await file.read()

    upload_error = validate_csv_upload(file.filename, file.content_type, len(contents))
    if upload_error:
        raise HTTPException(status_code=400, detail=upload_error)

    try:
        config = CSVImportConfig(**json.loads(mapping_config)) if mapping_config else CSVImportConfig()
    except (ValueError, TypeError, ValidationError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid mapping config: {str(e)}")

    try:
        decoded = contents.decode('utf-8-sig')
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="File encoding error. Please use UTF-8 encoded CSV")

    manager = create_connection_manager(db)
    try:
        result = manager.import_csv(current_user.id, decoded, config, account_id)
    except BankIntegrationError as e:
        if e.code == BankErrorCode.ACCOUNT_NOT_FOUND_OR_UNAUTHORIZED.value:
            raise HTTPException(status_code=404, detail="Account not found")
        raise HTTPException(status_code=400, detail=e.message)

    return schemas.CSVImportResponse(
        success=result.success,
        total_rows=result.total_rows,
        imported=result.successful_imports,
        failed=result.failed_imports,
        duplicates=result.duplicates,
        errors=[schemas.CSVRowError(row=e.row, error=e.error) for e in result.errors]
    )
