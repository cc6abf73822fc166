from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PayloadError
from starlette.concurrency import run_in_threadpool
from typing import Optional
import datetime as dt
import json
import logging

from .auth import AuthContext, check_cron_secret
from .domain import ReminderStatus, StopScope, new_reminder
from .errors import NotFoundError, RelanceError, UnexpectedError, ValidationError
from .models import (
    CronResponse,
    HistoryOut,
    HistoryResponse,
    ReminderCreate,
    ReminderListResponse,
    ReminderOut,
    ReminderResponse,
    StopRelanceRequest,
)
from .services import RelanceServices, build_services
from .utils import format_message

logger = logging.getLogger(__name__)

STOP_REASON = "document_uploaded"
STOP_SUCCESS = "Relances arrêtées avec succès"
INVALID_BODY = "Corps JSON invalide"


def get_services(request: Request) -> RelanceServices:
    return request.app.state.services


def require_auth(request: Request, services: RelanceServices = Depends(get_services)) -> AuthContext:
    return services.auth.authenticate(request)


async def call_service(func, *args, **kwargs):
    # anything that is not already a RelanceError surfaces as a 500 with its raw message
    try:
        return await run_in_threadpool(func, *args, **kwargs)
    except RelanceError:
        raise
    except Exception as exc:
        logger.exception("[API] %s failed", getattr(func, '__name__', func))
        raise UnexpectedError(str(exc)) from exc


def _first_error(exc) -> str:
    errors = exc.errors()
    if not errors:
        return INVALID_BODY
    err = errors[0]
    if err.get('type') == 'json_invalid':
        return INVALID_BODY
    loc = '.'.join(str(p) for p in err.get('loc', ()) if p != 'body')
    return f"{loc}: {err.get('msg')}" if loc else str(err.get('msg'))


def create_app(services: Optional[RelanceServices] = None) -> FastAPI:
    services = services or build_services()
    logging.basicConfig(level=services.settings.LOG_LEVEL.upper())

    app = FastAPI(title="Relance Backend", version="0.1.0")
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=services.settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RelanceError)
    async def relance_error_handler(request: Request, exc: RelanceError):
        if exc.status_code >= 500:
            logger.error("[API] %s %s: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"success": False, "error": _first_error(exc)})

    @app.get('/health')
    def health():
        return {"status": "ok"}

    @app.post('/api/relance/stop')
    async def stop_relances(request: Request,
                            auth: AuthContext = Depends(require_auth),
                            services: RelanceServices = Depends(get_services)):
        try:
            body = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError):
            raise ValidationError(INVALID_BODY)
        if not isinstance(body, dict):
            raise ValidationError(INVALID_BODY)
        if not body.get('dossier_id'):
            raise ValidationError("dossier_id requis")
        try:
            payload = StopRelanceRequest.model_validate(body)
        except PayloadError as exc:
            raise ValidationError(_first_error(exc)) from exc

        scope = StopScope.build(payload.document_type, payload.document_id)
        cancelled = await call_service(services.evaluator.stop, payload.dossier_id, STOP_REASON,
                                       scope, stopped_by=auth.user.user_id)
        logger.info("[API] %s stopped %d relances for dossier %s", auth.user.user_id, cancelled, payload.dossier_id)
        return {"success": True, "message": STOP_SUCCESS}

    @app.post('/api/relance', response_model=ReminderResponse)
    async def create_relance(payload: ReminderCreate,
                             auth: AuthContext = Depends(require_auth),
                             services: RelanceServices = Depends(get_services)):
        config = services.settings
        now = services.clock()
        interval = (payload.interval_days or config.RELANCE_FREQUENCY_DAYS) if payload.repeat else None
        due_at = payload.due_at or now + dt.timedelta(days=payload.interval_days or config.RELANCE_FREQUENCY_DAYS)
        template = payload.message or config.RELANCE_TEMPLATES.get(payload.relance_type, '')
        # names are known now; {dossier_id} and {jours_attente} are filled at delivery
        message = format_message(template, {'client_nom': payload.client_nom, 'expert_nom': payload.expert_nom})
        reminder = new_reminder(
            case_id=payload.dossier_id,
            relance_type=payload.relance_type,
            channel=payload.channel,
            recipient=payload.recipient,
            due_at=due_at,
            now=now,
            subject=payload.subject or '',
            message=message,
            stop_scope=StopScope.build(payload.document_type, payload.document_id),
            interval_days=interval,
        )
        created = await call_service(services.store.create, reminder)
        return ReminderResponse(reminder=ReminderOut.from_reminder(created))

    @app.get('/api/relance', response_model=ReminderListResponse)
    async def list_relances(dossier_id: Optional[str] = None,
                            statut: Optional[str] = None,
                            auth: AuthContext = Depends(require_auth),
                            services: RelanceServices = Depends(get_services)):
        status = None
        if statut:
            try:
                status = ReminderStatus(statut)
            except ValueError:
                raise ValidationError(f"statut invalide: {statut}")
        rows = await call_service(services.store.list, dossier_id, status)
        return ReminderListResponse(reminders=[ReminderOut.from_reminder(r) for r in rows], count=len(rows))

    @app.get('/api/relance/history', response_model=HistoryResponse)
    async def relance_history(dossier_id: Optional[str] = None,
                              relance_type: Optional[str] = None,
                              relance_types: Optional[str] = None,
                              statut: Optional[str] = None,
                              limit: int = Query(default=100, ge=1, le=1000),
                              auth: AuthContext = Depends(require_auth),
                              services: RelanceServices = Depends(get_services)):
        # relance_types (comma separated) wins over relance_type
        if relance_types:
            types = [t for t in relance_types.split(',') if t.strip()]
        elif relance_type:
            types = [relance_type]
        else:
            types = None
        entries = await call_service(services.history.list, dossier_id, types, statut, limit)
        return HistoryResponse(history=[HistoryOut.from_entry(e) for e in entries], count=len(entries))

    @app.get('/api/relance/{reminder_id}', response_model=ReminderResponse)
    async def get_relance(reminder_id: str,
                          auth: AuthContext = Depends(require_auth),
                          services: RelanceServices = Depends(get_services)):
        reminder = services.store.get(reminder_id)
        if reminder is None:
            raise NotFoundError("Relance introuvable")
        return ReminderResponse(reminder=ReminderOut.from_reminder(reminder))

    @app.get('/api/cron/relances', response_model=CronResponse)
    async def run_relances(request: Request, services: RelanceServices = Depends(get_services)):
        check_cron_secret(request, services.settings.CRON_SECRET)
        now = services.clock()
        report = await call_service(services.scheduler.tick, now)
        return CronResponse(timestamp=now.isoformat(), **report.summary())

    return app


app = create_app()
