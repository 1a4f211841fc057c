import logging
import secrets
import socket
import sys
from datetime import datetime, timezone
from typing import Any

import uvicorn
from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.responses import Response

from habitlog import __version__, checklist, screen_time
from habitlog.bank import AccountsOut, BankClient, TransactionsOut
from habitlog.config import Settings, load_settings
from habitlog.errors import AuthError, HabitlogError, ValidationError
from habitlog.notes import ShortenNoteIn, shorten_note
from habitlog.records import is_valid_date_string, today_string
from habitlog.storage import Repositories, build_repositories

APP_NAME = "habitlog"

log = logging.getLogger(APP_NAME)

NO_STORE = "no-store, no-cache, must-revalidate, proxy-revalidate"
CSV_HEADERS = {
    "Cache-Control": NO_STORE,
    "Pragma": "no-cache",
    "Expires": "0",
    "Surrogate-Control": "no-store",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def _settings(request: Request) -> Settings:
    return request.app.state.settings


def _repos(request: Request) -> Repositories:
    return request.app.state.repos


def _bank(request: Request) -> BankClient:
    return request.app.state.bank


def _key_from_request(request: Request, header: str) -> str:
    """Shared-secret key from ``?key=`` first, then the given header."""
    query_key = (request.query_params.get("key") or "").strip()
    if query_key:
        return query_key
    return (request.headers.get(header) or "").strip()


def _require_key(provided: str, expected: str) -> None:
    if not expected or not secrets.compare_digest(provided.encode(), expected.encode()):
        raise AuthError()


def _require_bank_key(request: Request) -> None:
    """Only enforced when BANK_KEY is configured."""
    expected = _settings(request).bank_key
    if expected:
        _require_key(_key_from_request(request, "x-bank-key"), expected)


def _status_date(date: str | None) -> str:
    day = date or today_string()
    if not is_valid_date_string(day):
        raise ValidationError("Invalid date")
    return day


# ─────────────────────────────────────────────────────────────
# Daily checklist
# ─────────────────────────────────────────────────────────────

entries_router = APIRouter(prefix="/entries", tags=["entries"])


def _entry_out(record: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {"id": record["id"], "date": record["date"]}
    for name in checklist.FLAG_FIELDS:
        out[name] = int(record.get(name) or 0)
    out["note"] = record.get("note") or None
    out["created_at"] = record.get("created_at")
    return out


@entries_router.post("")
def api_save_entry(request: Request, entry: checklist.EntryIn) -> JSONResponse:
    result = _repos(request).entries.save(entry.model_dump())
    return JSONResponse(_entry_out(result.record), status_code=201 if result.created else 200)


@entries_router.get("/today", response_model=checklist.ChecklistStatus)
def api_entries_today(request: Request, date: str | None = None) -> checklist.ChecklistStatus:
    day = _status_date(date)
    return checklist.daily_status(_repos(request).entries.latest(day), day)


@entries_router.post("/reset")
def api_reset_entries(request: Request) -> dict[str, Any]:
    _require_key(_key_from_request(request, "x-reset-key"), _settings(request).reset_key)
    deleted = _repos(request).entries.reset()
    return {"ok": True, "deleted": deleted}


exports_router = APIRouter(tags=["exports"])


def _csv_response(body: str, filename: str) -> Response:
    return Response(
        content=body,
        media_type="text/csv; charset=utf-8",
        headers={**CSV_HEADERS, "Content-Disposition": f'inline; filename="{filename}"'},
    )


@exports_router.get("/entries.csv")
def api_entries_csv(request: Request) -> Response:
    _require_key(_key_from_request(request, "x-csv-key"), _settings(request).csv_key)
    return _csv_response(checklist.to_csv(_repos(request).entries.latest_per_date()), "entries.csv")


@exports_router.get("/entries/notes.csv")
def api_notes_csv(request: Request) -> Response:
    _require_key(_key_from_request(request, "x-csv-key"), _settings(request).csv_key)
    return _csv_response(checklist.to_notes_csv(_repos(request).entries.latest_per_date()), "notes.csv")


# ─────────────────────────────────────────────────────────────
# Screen time
# ─────────────────────────────────────────────────────────────

screen_time_router = APIRouter(prefix="/screen-time", tags=["screen-time"])


def _require_screen_time_key(request: Request) -> None:
    _require_key(_key_from_request(request, "x-screen-time-key"), _settings(request).screen_time_key)


# Dependencies run before body validation: a bad key is 401 even when the fields are invalid
@screen_time_router.post("", dependencies=[Depends(_require_screen_time_key)])
def api_save_screen_time(request: Request, body: screen_time.ScreenTimeIn) -> JSONResponse:
    result = _repos(request).screen_time.save(body.model_dump())
    record = result.record
    out = {
        "id": record["id"],
        "date": record["date"],
        "total_minutes": record["total_minutes"],
        "pickups": record.get("pickups"),
        "source": record.get("source"),
    }
    return JSONResponse(out, status_code=201 if result.created else 200)


@screen_time_router.get("/today", response_model=screen_time.ScreenTimeStatus)
def api_screen_time_today(request: Request, date: str | None = None) -> screen_time.ScreenTimeStatus:
    day = _status_date(date)
    return screen_time.daily_status(_repos(request).screen_time.latest(day), day)


# ─────────────────────────────────────────────────────────────
# Bank (read-only)
# ─────────────────────────────────────────────────────────────

bank_router = APIRouter(prefix="/bank", tags=["bank"])


@bank_router.get("/accounts", response_model=AccountsOut)
def api_bank_accounts(request: Request, response: Response, accountKey: str = "") -> AccountsOut:
    _require_bank_key(request)
    response.headers["Cache-Control"] = "no-store"
    return _bank(request).fetch_accounts(accountKey.strip())


@bank_router.get("/transactions", response_model=TransactionsOut)
def api_bank_transactions(
    request: Request,
    response: Response,
    accountKey: str = "",
    fromDate: str = "",
    toDate: str = "",
    rowLimit: str | None = None,
) -> TransactionsOut:
    _require_bank_key(request)
    response.headers["Cache-Control"] = "no-store"
    return _bank(request).fetch_transactions(
        account_key=accountKey.strip(),
        from_date=fromDate.strip(),
        to_date=toDate.strip(),
        row_limit=rowLimit,
    )


@bank_router.post("/keepalive")
def api_bank_keepalive(request: Request) -> dict[str, Any]:
    """Force a refresh-token grant so the stored refresh token stays alive."""
    _require_bank_key(request)
    token = _bank(request).issue_access_token()
    return {"ok": bool(token), "refreshed_at": _utc_now().isoformat()}


# ─────────────────────────────────────────────────────────────
# Notes / misc
# ─────────────────────────────────────────────────────────────

misc_router = APIRouter(tags=["misc"])


@misc_router.post("/notes/shorten")
def api_shorten_note(request: Request, body: ShortenNoteIn) -> dict[str, str]:
    return {"short_text": shorten_note(body.text, _settings(request))}


@misc_router.get("/api/health")
def api_health(request: Request) -> dict[str, Any]:
    return {"ok": True, "now": _utc_now().isoformat(), "storage": _settings(request).storage, "version": __version__}


# ─────────────────────────────────────────────────────────────
# Error responses
# ─────────────────────────────────────────────────────────────

def _error_response(request: Request, status_code: int, message: str, headers: dict[str, str] | None = None) -> Response:
    if request.url.path.endswith(".csv"):
        return PlainTextResponse(message, status_code=status_code, headers=headers)
    return JSONResponse({"error": message}, status_code=status_code, headers=headers)


async def _habitlog_error_handler(request: Request, exc: HabitlogError) -> Response:
    return _error_response(request, exc.status_code, exc.message)


async def _request_validation_handler(request: Request, exc: RequestValidationError) -> Response:
    return _error_response(request, 400, ValidationError.default_message)


async def _http_error_handler(request: Request, exc: StarletteHTTPException) -> Response:
    return _error_response(request, exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))


# ─────────────────────────────────────────────────────────────
# App factory
# ─────────────────────────────────────────────────────────────

def _bank_keepalive_job(bank: BankClient) -> None:
    try:
        bank.issue_access_token()
        log.info("Bank keepalive refreshed token")
    except HabitlogError as exc:
        log.warning("Bank keepalive failed: %s", exc.message)


def _start_scheduler(app: FastAPI) -> None:
    settings: Settings = app.state.settings
    if not (settings.bank_keepalive and settings.bank_configured):
        return
    scheduler = BackgroundScheduler()
    scheduler.add_job(_bank_keepalive_job, "cron", hour=4, minute=0, args=[app.state.bank])
    scheduler.start()
    app.state.scheduler = scheduler


def create_app(settings: Settings | None = None) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title=APP_NAME, version=__version__)
    app.state.settings = settings
    app.state.repos = build_repositories(settings)
    app.state.bank = BankClient(settings)
    app.state.scheduler = None

    app.include_router(exports_router)
    app.include_router(entries_router)
    app.include_router(screen_time_router)
    app.include_router(bank_router)
    app.include_router(misc_router)

    app.add_exception_handler(HabitlogError, _habitlog_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)
    app.add_exception_handler(StarletteHTTPException, _http_error_handler)

    @app.on_event("startup")
    def on_startup() -> None:
        settings.ensure_dirs()
        _start_scheduler(app)
        log.info("%s started, storage=%s", APP_NAME, settings.storage)

    @app.on_event("shutdown")
    def on_shutdown() -> None:
        if app.state.scheduler is not None:
            app.state.scheduler.shutdown(wait=False)

    return app


def _port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        try:
            sock.bind((host, port))
        except OSError:
            return True
    return False


def main() -> None:
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s - %(levelname)s - %(name)s - %(message)s",
    )
    if _port_in_use(settings.host, settings.port):
        log.error("Port %s is already in use. Stop the other server using it and start again.", settings.port)
        sys.exit(1)
    log.info("Serving on http://%s:%s", settings.host, settings.port)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
