"""FastAPI surface over the rota rules engine.

``create_app()`` builds the application; the lifespan creates the schema,
seeds the baseline policy and stores one ``RotaEngine`` on ``app.state``.
Request bodies are plain dicts checked by hand, mirroring the rest of the app.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import datetime
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

# Ensure flat absolute imports (e.g., "import database") still resolve.
APP_DIR = Path(__file__).resolve().parent
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from availability import CarerPool, ShiftWindow  # noqa: E402
from database import (  # noqa: E402
    build_engine,
    build_session_factory,
    get_active_policy,
    init_database,
    normalize_shift_type,
    record_audit_log,
    rota_entry_to_dict,
    upsert_policy,
)
from engine import RotaEngine, build_rota_engine  # noqa: E402
from logger import configure_logging, get_logger  # noqa: E402
from policy import ensure_default_policy  # noqa: E402
from rota_time import is_valid_clock  # noqa: E402
from rules import CARER_EXISTS, PACKAGE_EXISTS, ShiftCandidate  # noqa: E402
from store import DuplicateShiftError, RotaEntryNotFoundError  # noqa: E402

logger = get_logger(__name__)

router = APIRouter()


def get_engine(request: Request) -> RotaEngine:
    return request.app.state.rota_engine


def get_db(request: Request):
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


def _parse_date(value: Any, field: str = "date") -> datetime.date:
    try:
        return datetime.date.fromisoformat(str(value)[:10])
    except (TypeError, ValueError):
        raise HTTPException(status_code=400, detail=f"{field} must be YYYY-MM-DD")


def _candidate(payload: Dict[str, Any]) -> ShiftCandidate:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Request body must be an object")
    try:
        return ShiftCandidate.from_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _actor(payload: Optional[Dict[str, Any]], fallback: str = "api") -> str:
    return str((payload or {}).get("actor") or fallback).strip() or fallback


def _audit(db: Session, actor: str, action: str, target: Optional[str], payload: Optional[Dict[str, Any]] = None) -> None:
    record_audit_log(db, user_id=actor, action=action, target_type="RotaEntry", target_id=target, payload=payload)


def _policy_payload(policy) -> Dict[str, Any]:
    return {
        "id": policy.id,
        "name": policy.name,
        "params": policy.params_dict(),
        "lastEditedBy": policy.lastEditedBy,
        "lastEditedAt": policy.lastEditedAt.isoformat() if policy.lastEditedAt else None,
    }


@router.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@router.get("/api/v1/rota/rules")
def list_rules(engine: RotaEngine = Depends(get_engine)) -> JSONResponse:
    return JSONResponse(content=jsonable_encoder({"rules": engine.rule_catalog(), "limits": engine.limits.to_dict()}))


@router.post("/api/v1/rota/validate")
def validate_entry(payload: Dict[str, Any], engine: RotaEngine = Depends(get_engine)) -> JSONResponse:
    candidate = _candidate(payload)
    result = engine.validate(candidate, check_duplicates=bool(payload.get("check_duplicates")))
    return JSONResponse(content=jsonable_encoder(result.to_dict()))


@router.post("/api/v1/rota/bulk")
def bulk_create(
    payload: Dict[str, Any],
    engine: RotaEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> JSONResponse:
    raw_entries = payload.get("entries")
    if not isinstance(raw_entries, list) or not raw_entries:
        raise HTTPException(status_code=400, detail="entries must be a non-empty list")
    candidates: List[ShiftCandidate] = []
    for index, item in enumerate(raw_entries):
        try:
            candidates.append(ShiftCandidate.from_payload(item if isinstance(item, dict) else {}))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"entries[{index}]: {exc}") from exc

    actor = _actor(payload)
    validate_only = bool(payload.get("validate_only"))
    try:
        batch = engine.validate_batch(candidates, validate_only=validate_only, created_by=actor)
    except DuplicateShiftError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc

    if validate_only:
        return JSONResponse(content=jsonable_encoder(batch.to_dict()))
    if not batch.all_valid:
        return JSONResponse(status_code=400, content=jsonable_encoder(batch.to_dict()))
    _audit(db, actor, "ROTA_BULK_CREATE", None, {"ids": [entry.id for entry in batch.committed]})
    return JSONResponse(status_code=201, content=jsonable_encoder(batch.to_dict()))


@router.post("/api/v1/rota/batch-delete")
def batch_delete(
    payload: Dict[str, Any],
    engine: RotaEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> JSONResponse:
    ids = payload.get("ids")
    if not isinstance(ids, list) or not ids:
        raise HTTPException(status_code=400, detail="ids must be a non-empty list")
    try:
        deleted = engine.delete_entries([str(entry_id) for entry_id in ids])
    except RotaEntryNotFoundError as exc:
        return JSONResponse(
            status_code=404,
            content=jsonable_encoder({"detail": str(exc), "not_found_ids": exc.missing_ids}),
        )
    actor = _actor(payload)
    _audit(db, actor, "ROTA_BATCH_DELETE", None, {"ids": [entry.id for entry in deleted]})
    return JSONResponse(content=jsonable_encoder({"deleted_count": len(deleted), "deleted_ids": [entry.id for entry in deleted]}))


@router.post("/api/v1/rota/availability")
def availability(payload: Dict[str, Any], engine: RotaEngine = Depends(get_engine)) -> JSONResponse:
    missing = [key for key in ("date", "start_time", "end_time", "package_id", "shift_type") if not payload.get(key)]
    if missing:
        raise HTTPException(status_code=400, detail=f"Missing required fields: {', '.join(missing)}")
    for key in ("start_time", "end_time"):
        if not is_valid_clock(payload[key]):
            raise HTTPException(status_code=400, detail=f"{key} must be HH:MM")
    try:
        shift_type = normalize_shift_type(payload["shift_type"])
        pool = CarerPool(payload.get("pool") or CarerPool.PACKAGE.value)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    window = ShiftWindow(
        date=_parse_date(payload["date"]),
        start_time=payload["start_time"],
        end_time=payload["end_time"],
        package_id=str(payload["package_id"]),
        shift_type=shift_type,
    )
    checks = engine.resolve_availability(
        window,
        [str(task_id) for task_id in payload.get("required_task_ids") or []],
        competent_only=bool(payload.get("competent_only")),
        pool=pool,
        exclude_carer_ids=[str(carer_id) for carer_id in payload.get("exclude_carer_ids") or []],
    )
    return JSONResponse(
        content=jsonable_encoder(
            {
                "available": [check.to_dict() for check in checks if check.is_available],
                "unavailable": [check.to_dict() for check in checks if not check.is_available],
            }
        )
    )


@router.get("/api/v1/rota/weekly/{package_id}")
def weekly_view(
    package_id: str,
    week_start: str = Query(...),
    engine: RotaEngine = Depends(get_engine),
) -> JSONResponse:
    view = engine.weekly_view(package_id, _parse_date(week_start, "week_start"))
    if view is None:
        raise HTTPException(status_code=404, detail="Care package not found")
    return JSONResponse(content=jsonable_encoder(view))


@router.post("/api/v1/rota")
def create_entry(
    payload: Dict[str, Any],
    engine: RotaEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> JSONResponse:
    candidate = _candidate(payload)
    actor = _actor(payload)
    try:
        outcome = engine.create_entry(candidate, created_by=actor)
    except DuplicateShiftError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not outcome.saved:
        critical = {violation.rule for violation in outcome.errors}
        status = 404 if critical & {CARER_EXISTS, PACKAGE_EXISTS} else 409
        return JSONResponse(status_code=status, content=jsonable_encoder(outcome.to_dict()))
    _audit(db, actor, "ROTA_CREATE", outcome.entry.id, {"violations": [v.rule for v in outcome.errors]})
    return JSONResponse(status_code=201, content=jsonable_encoder(outcome.to_dict()))


@router.get("/api/v1/rota/{entry_id}")
def get_entry(entry_id: str, engine: RotaEngine = Depends(get_engine)) -> JSONResponse:
    try:
        entry = engine.get_entry(entry_id)
    except RotaEntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    carer = engine.store.get_carer(entry.carer_id)
    package = engine.store.get_package(entry.package_id)
    return JSONResponse(content=jsonable_encoder(rota_entry_to_dict(entry, carer, package)))


@router.put("/api/v1/rota/{entry_id}")
def update_entry(
    entry_id: str,
    payload: Dict[str, Any],
    engine: RotaEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> JSONResponse:
    try:
        outcome = engine.update_entry(entry_id, payload)
    except RotaEntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DuplicateShiftError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not outcome.saved:
        return JSONResponse(status_code=400, content=jsonable_encoder(outcome.to_dict()))
    _audit(db, _actor(payload), "ROTA_UPDATE", entry_id, {"changes": sorted(payload)})
    return JSONResponse(content=jsonable_encoder(outcome.to_dict()))


@router.post("/api/v1/rota/{entry_id}/confirm")
def confirm_entry(
    entry_id: str,
    payload: Optional[Dict[str, Any]] = None,
    engine: RotaEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> JSONResponse:
    try:
        entry = engine.confirm_entry(entry_id)
    except RotaEntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    _audit(db, _actor(payload), "ROTA_CONFIRM", entry_id)
    return JSONResponse(content=jsonable_encoder(rota_entry_to_dict(entry)))


@router.delete("/api/v1/rota/{entry_id}")
def delete_entry(
    entry_id: str,
    actor: str = Query("api"),
    engine: RotaEngine = Depends(get_engine),
    db: Session = Depends(get_db),
) -> JSONResponse:
    try:
        entry = engine.delete_entry(entry_id)
    except RotaEntryNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    _audit(db, actor, "ROTA_DELETE", entry_id, rota_entry_to_dict(entry))
    return JSONResponse(content=jsonable_encoder({"deleted_id": entry.id}))


@router.get("/api/v1/policy/active")
def active_policy(db: Session = Depends(get_db)) -> JSONResponse:
    policy = get_active_policy(db)
    if not policy:
        raise HTTPException(status_code=404, detail="No active policy found")
    return JSONResponse(content=jsonable_encoder(_policy_payload(policy)))


@router.put("/api/v1/policy/active")
def set_active_policy(request: Request, payload: Dict[str, Any], db: Session = Depends(get_db)) -> JSONResponse:
    name = payload.get("name")
    params = payload.get("params") or {}
    actor = _actor(payload)
    if not name:
        raise HTTPException(status_code=400, detail="name is required")
    if not isinstance(params, dict):
        raise HTTPException(status_code=400, detail="params must be an object")
    policy = upsert_policy(db, name=name, params_dict=params, edited_by=actor)
    record_audit_log(db, user_id=actor, action="POLICY_EDIT", target_type="Policy", target_id=str(policy.id), payload={"name": policy.name})
    # New limits apply to every request after this one.
    request.app.state.rota_engine = build_rota_engine(request.app.state.session_factory)
    return JSONResponse(content=jsonable_encoder(_policy_payload(policy)))


def create_app(session_factory=None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        factory = session_factory
        if factory is None:
            factory = build_session_factory(build_engine())
        with factory() as session:
            init_database(session.get_bind())
        ensure_default_policy(factory)
        app.state.session_factory = factory
        app.state.rota_engine = build_rota_engine(factory)
        logger.info("Rota API ready")
        yield

    app = FastAPI(title="Care Rota Rules API", version="0.1", lifespan=lifespan)
    app.include_router(router)
    return app


app = create_app()
