"""
HTTP API for penalty imports and penalty lookups.
"""

import logging
import math
import sqlite3
import uuid
from datetime import date
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .auth import Principal, TokenRegistry, require_principal, require_roles
from .config_loader import ConfigLoader, UploadPolicy
from .import_pipeline import ImportOrchestrator
from .penalty_store import DocumentValidationError, PenaltyFilters, PenaltyStore
from .utils import discard_file

logger = logging.getLogger(__name__)

UPLOAD_CHUNK_BYTES = 1024 * 1024

router = APIRouter(prefix="/api/traffic-penalties")


def build_store(config: ConfigLoader) -> PenaltyStore:
    """Penalty store configured from storage settings and the column schema."""
    required = tuple(spec.field for spec in config.load_column_specs() if spec.required)
    return PenaltyStore(config.db_path(), required_fields=required)


def stage_upload(upload: UploadFile, policy: UploadPolicy) -> Path:
    """
    Copy an uploaded workbook into the staging directory.

    Raises:
        HTTPException: 400 for a non-Excel file or one above the size limit
    """
    suffix = Path(upload.filename or '').suffix.lower()
    if suffix not in policy.extensions:
        raise HTTPException(status_code=400, detail="Only Excel files are allowed")

    policy.staging_dir.mkdir(parents=True, exist_ok=True)
    staged = policy.staging_dir / f"{uuid.uuid4().hex}{suffix}"
    size = 0
    try:
        with open(staged, 'wb') as out:
            while chunk := upload.file.read(UPLOAD_CHUNK_BYTES):
                size += len(chunk)
                if size > policy.max_bytes:
                    raise HTTPException(
                        status_code=400,
                        detail=f"File exceeds the {policy.max_bytes // (1024 * 1024)}MB limit",
                    )
                out.write(chunk)
    except BaseException:
        discard_file(staged)
        raise

    logger.info(f"Staged upload {upload.filename} ({size} bytes) as {staged.name}")
    return staged


async def clear_existing_flag(request: Request,
                              clear_existing: Optional[str] = Form(None, alias="clearExisting")) -> bool:
    """
    The clearExisting flag, from a form field or a JSON body.

    Only true or "true" (any case) trigger the wipe.

    Raises:
        HTTPException: 400 for a malformed JSON body
    """
    value: Any = clear_existing
    if request.headers.get('content-type', '').lower().startswith('application/json'):
        try:
            payload = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON body")
        if isinstance(payload, dict):
            value = payload.get('clearExisting')

    if isinstance(value, bool):
        return value
    return isinstance(value, str) and value.strip().lower() == 'true'


@router.post("/import")
def import_penalties(request: Request,
                     excel_file: Optional[UploadFile] = File(None, alias="excelFile"),
                     principal: Principal = Depends(require_roles('admin')),
                     clear: bool = Depends(clear_existing_flag)):
    """Import the uploaded workbook, or the default one if nothing was uploaded."""
    config: ConfigLoader = request.app.state.config
    store: PenaltyStore = request.app.state.store

    staged = None
    if excel_file is not None and excel_file.filename:
        staged = stage_upload(excel_file, config.upload_policy())

    logger.info(f"Import requested by {principal.user_id} (clear_existing={clear})")

    try:
        orchestrator = ImportOrchestrator(store, config)
        summary = orchestrator.run(upload_path=staged, clear_existing=clear)
    except Exception as e:
        logger.error(f"Import error: {e}")
        return JSONResponse(status_code=500, content={'message': 'Import failed', 'error': str(e)})
    finally:
        if staged is not None:
            discard_file(staged)

    return {'message': 'Import completed', **summary.to_response()}


@router.get("")
def list_penalties(request: Request,
                   page: int = Query(1, ge=1),
                   limit: int = Query(20, ge=1, le=500),
                   penalty_number: Optional[int] = Query(None, alias="penaltyNumber"),
                   driver_name: Optional[str] = Query(None, alias="driverName"),
                   passenger_name: Optional[str] = Query(None, alias="passengerName"),
                   plate: Optional[str] = Query(None),
                   place: Optional[str] = Query(None),
                   is_flagged: Optional[bool] = Query(None, alias="isFlagged"),
                   start_date: Optional[date] = Query(None, alias="startDate"),
                   end_date: Optional[date] = Query(None, alias="endDate"),
                   principal: Principal = Depends(require_principal)):
    store: PenaltyStore = request.app.state.store
    filters = PenaltyFilters(
        penalty_number=penalty_number,
        driver_name=driver_name,
        passenger_name=passenger_name,
        vehicle_plate=plate,
        event_place=place,
        is_flagged=is_flagged,
        start_date=start_date,
        end_date=end_date,
    )
    penalties, total = store.find(filters, page=page, limit=limit)
    return {
        'penalties': penalties,
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'pages': math.ceil(total / limit),
        },
    }


@router.get("/stats/overview")
def stats_overview(request: Request,
                   start_date: Optional[date] = Query(None, alias="startDate"),
                   end_date: Optional[date] = Query(None, alias="endDate"),
                   principal: Principal = Depends(require_principal)):
    store: PenaltyStore = request.app.state.store
    return store.stats_overview(start_date=start_date, end_date=end_date)


@router.get("/{penalty_id}")
def get_penalty(request: Request, penalty_id: int,
                principal: Principal = Depends(require_principal)):
    store: PenaltyStore = request.app.state.store
    penalty = store.get(penalty_id)
    if penalty is None:
        raise HTTPException(status_code=404, detail="Penalty not found")
    return penalty


@router.patch("/{penalty_id}")
def update_penalty(request: Request, penalty_id: int,
                   payload: dict[str, Any] = Body(...),
                   principal: Principal = Depends(require_roles('admin', 'ceza'))):
    store: PenaltyStore = request.app.state.store
    try:
        penalty = store.update_fields(penalty_id, payload)
    except (DocumentValidationError, sqlite3.IntegrityError) as e:
        raise HTTPException(status_code=400, detail=f"Invalid update: {e}")
    if penalty is None:
        raise HTTPException(status_code=404, detail="Penalty not found")
    logger.info(f"Penalty {penalty_id} updated by {principal.user_id}")
    return penalty


def create_app(config: Optional[ConfigLoader] = None,
               store: Optional[PenaltyStore] = None,
               registry: Optional[TokenRegistry] = None) -> FastAPI:
    """
    Build the API application.

    Args:
        config: ConfigLoader (default: packaged configuration)
        store: PenaltyStore (default: built from config)
        registry: TokenRegistry (default: tokens from the 'auth' config section)
    """
    config = config or ConfigLoader()
    app = FastAPI(title="Penalty Import API")
    app.state.config = config
    app.state.store = store or build_store(config)
    app.state.token_registry = registry or TokenRegistry.from_config(config.section('auth'))

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException):
        return JSONResponse(
            status_code=exc.status_code,
            content={'message': exc.detail},
            headers=getattr(exc, 'headers', None),
        )

    @app.get("/api/health")
    def health_check():
        return {'status': 'OK', 'message': 'Server is running'}

    app.include_router(router)
    return app
