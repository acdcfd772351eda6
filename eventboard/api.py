"""FastAPI application for EventBoard."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from importlib.metadata import PackageNotFoundError, version as pkg_version
from pathlib import Path
import tomllib

from fastapi import Depends, FastAPI, Form, HTTPException, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import crud
from .admin import ADMIN_COOKIE, ViewerContext, check_admin_pin
from .carousel import Carousel
from .config import settings
from .documents import Document, DocumentStore
from .errors import AuthenticationFailure, WriteFailure
from .identity import IdentityProvider
from .projection import ProjectedEvent, ProjectionEngine, imminent_events
from .scheduler import start_scheduler, stop_scheduler
from .storage import fetch_identity_secret, init_db
from .utils import humanize_time, utcnow

# Use uvicorn's error logger so messages get the level prefix in the default log
# format.
logger = logging.getLogger("uvicorn.error")

SESSION_COOKIE = "eventboard_uid"
SESSION_COOKIE_MAX_AGE = 60 * 60 * 24 * 365

WRITE_FAILURE_MESSAGE = "We couldn't save that change. Please try again."


def _load_app_version() -> str:
    """Return the current package version, falling back to pyproject for dev runs."""
    try:
        return pkg_version("eventboard")
    except PackageNotFoundError:
        pyproject_path = Path(__file__).resolve().parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            data = tomllib.loads(pyproject_path.read_text())
            project = data.get("project") or {}
            return str(project.get("version") or "dev")
    return "dev"


APP_VERSION = _load_app_version()


@dataclass
class Board:
    """Runtime collaborators shared by every request."""

    store: DocumentStore
    engine: ProjectionEngine
    carousel: Carousel
    identity: IdentityProvider


def build_board() -> Board:
    store = DocumentStore(settings.namespace)
    carousel = Carousel(settings.carousel_interval_seconds)
    engine = ProjectionEngine(
        store,
        rsvp_read_timeout=settings.rsvp_read_timeout_seconds,
        live_rsvp_refresh=settings.live_rsvp_refresh,
        rsvp_watch_limit=settings.rsvp_watch_limit,
    )
    engine.add_banner_listener(carousel.on_banners)
    return Board(
        store=store,
        engine=engine,
        carousel=carousel,
        identity=IdentityProvider(fetch_identity_secret()),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    board = build_board()
    await board.engine.start()
    await board.engine.settle()
    app.state.board = board
    if settings.enable_scheduler:
        start_scheduler(board.carousel)
    try:
        yield
    finally:
        stop_scheduler()
        board.engine.stop()


app = FastAPI(title="EventBoard", version=APP_VERSION, lifespan=lifespan)
templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))
static_dir = Path(__file__).parent / "static"
app.mount("/static", StaticFiles(directory=str(static_dir)), name="static")

templates.env.globals["app_version"] = APP_VERSION
templates.env.filters["relative_time"] = humanize_time


def _no_cache(response: Response) -> Response:
    """Prevent clients from caching dynamic pages so fresh data is shown."""
    response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate, max-age=0"
    response.headers["Pragma"] = "no-cache"
    response.headers["Expires"] = "0"
    return response


def get_board(request: Request) -> Board:
    return request.app.state.board


def _get_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("authorization") or ""
    if not auth_header.lower().startswith("bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return token or None


def get_viewer(request: Request, board: Board = Depends(get_board)) -> ViewerContext:
    identity = board.identity.resolve_identity(
        session_user_id=request.cookies.get(SESSION_COOKIE),
        bearer_token=_get_bearer_token(request),
    )
    # Token-derived ids are recomputed per request; only anonymous ids need a cookie.
    request.state.issued_user_id = (
        identity.user_id if identity.is_new and identity.is_anonymous else None
    )
    return ViewerContext(
        user_id=identity.user_id,
        is_anonymous=identity.is_anonymous,
        is_admin=request.cookies.get(ADMIN_COOKIE) == "1",
    )


def _remember_viewer(request: Request, response: Response) -> Response:
    issued = getattr(request.state, "issued_user_id", None)
    if issued:
        response.set_cookie(
            SESSION_COOKIE,
            issued,
            max_age=SESSION_COOKIE_MAX_AGE,
            httponly=True,
            samesite="lax",
        )
    return response


def _require_admin(viewer: ViewerContext) -> None:
    if not viewer.is_admin:
        raise HTTPException(status_code=403, detail="Owner mode is required")


async def _run_write(board: Board, action, *args, **kwargs):
    """Run a blocking store write, then wait for the projection to catch up."""
    try:
        result = await run_in_threadpool(action, board.store, *args, **kwargs)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    await board.engine.settle()
    return result


def _serialize_event(event: ProjectedEvent, *, include_attendees: bool = False):
    payload = {
        "id": event.id,
        "title": event.title,
        "description": event.description,
        "start_time": event.start_time,
        "starts_at": event.starts_at.isoformat(),
        "attendee_count": event.attendee_count,
        "attending": event.viewer_attending,
        "created_by": event.created_by,
        "created_at": event.created_at,
    }
    if include_attendees:
        payload["attendees"] = sorted(event.attendee_ids)
    return payload


def _serialize_banner(banner: Document):
    return {
        "id": banner.id,
        "image_url": banner.get("image_url"),
        "created_at": banner.get("created_at"),
    }


def _wants_json(request: Request) -> bool:
    accept = (request.headers.get("accept") or "").lower()
    return request.url.path.startswith("/api/") or (
        "application/json" in accept and "text/html" not in accept
    )


def _render_error(request: Request, status_code: int, message: str | None):
    context = {
        "request": request,
        "status_code": status_code,
        "error_message": message or "Something went wrong.",
    }
    return templates.TemplateResponse(
        request, "error.html", context, status_code=status_code
    )


def _board_context(
    request: Request,
    board: Board,
    viewer: ViewerContext,
    *,
    notice: str | None = None,
    notice_level: str = "info",
) -> dict:
    now = utcnow()
    events = board.engine.projection.for_viewer(viewer.user_id)
    banners = board.engine.banners
    return {
        "request": request,
        "viewer": viewer,
        "events": events,
        "imminent": imminent_events(events, now=now, window=settings.imminent_window),
        "banner": board.carousel.current(banners),
        "banner_count": len(banners),
        "carousel_index": board.carousel.index,
        "carousel_interval": board.carousel.interval_seconds,
        "banners": banners,
        "notice": notice,
        "notice_level": notice_level,
        "now": now,
    }


def _render_board(
    request: Request,
    board: Board,
    viewer: ViewerContext,
    *,
    status_code: int = 200,
    notice: str | None = None,
    notice_level: str = "info",
):
    response = templates.TemplateResponse(
        request,
        "index.html",
        _board_context(
            request, board, viewer, notice=notice, notice_level=notice_level
        ),
        status_code=status_code,
    )
    return _remember_viewer(request, _no_cache(response))


def _back_to_board(request: Request) -> RedirectResponse:
    return _remember_viewer(request, RedirectResponse(url="/", status_code=303))


async def _form_write(
    request: Request, board: Board, viewer: ViewerContext, action, *args, **kwargs
):
    """Run a write for a form post; failures re-render the board with a notice."""
    try:
        await _run_write(board, action, *args, **kwargs)
    except HTTPException as exc:
        if exc.status_code != 400:
            raise
        return _render_board(
            request, board, viewer, status_code=400, notice=exc.detail, notice_level="error"
        )
    except WriteFailure as exc:
        logger.warning("Write failed while handling %s: %s", request.url.path, exc)
        return _render_board(
            request,
            board,
            viewer,
            status_code=503,
            notice=WRITE_FAILURE_MESSAGE,
            notice_level="error",
        )
    return _back_to_board(request)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Render HTTP errors as friendly pages unless JSON was requested."""
    if _wants_json(request):
        return JSONResponse({"detail": exc.detail}, status_code=exc.status_code)
    detail = exc.detail if isinstance(exc.detail, str) else "Something went wrong."
    return _render_error(request, exc.status_code, detail)


@app.exception_handler(AuthenticationFailure)
async def authentication_failure_handler(
    request: Request, exc: AuthenticationFailure
):
    logger.warning(
        "Identity could not be established for %s %s: %s",
        request.method,
        request.url.path,
        exc,
    )
    detail = str(exc) or "We couldn't sign you in."
    if _wants_json(request):
        return JSONResponse({"detail": detail}, status_code=401)
    return _render_error(request, 401, detail)


@app.exception_handler(WriteFailure)
async def write_failure_handler(request: Request, exc: WriteFailure):
    logger.warning(
        "Write failed while handling %s %s: %s",
        request.method,
        request.url.path,
        exc,
    )
    if _wants_json(request):
        return JSONResponse({"detail": WRITE_FAILURE_MESSAGE}, status_code=503)
    return _render_error(request, 503, WRITE_FAILURE_MESSAGE)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    if _wants_json(request):
        return JSONResponse({"detail": exc.errors()}, status_code=422)
    return _render_error(
        request,
        422,
        "Some of the fields were invalid. Please double-check and try again.",
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Gracefully handle unexpected errors."""
    logger.exception(
        "Unhandled error while processing %s %s", request.method, request.url.path
    )
    if _wants_json(request):
        return JSONResponse({"detail": "Internal server error"}, status_code=500)
    return _render_error(
        request,
        500,
        "We hit a snag while processing that request. Please try again.",
    )


# -------- HTML board --------


@app.get("/")
def board_page(
    request: Request,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    return _render_board(request, board, viewer)


@app.post("/rsvp/{event_id}")
async def toggle_rsvp_form(
    event_id: str,
    request: Request,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    event = board.engine.projection.find(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    return await _form_write(
        request,
        board,
        viewer,
        crud.toggle_rsvp,
        event_id=event_id,
        user_id=viewer.user_id,
        currently_attending=viewer.user_id in event.attendee_ids,
    )


@app.post("/admin/login")
def admin_login_form(
    request: Request,
    pin: str = Form(""),
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    if not check_admin_pin(pin, settings.admin_pin):
        logger.warning("Rejected owner PIN for viewer %s", viewer.user_id)
        return _render_board(
            request,
            board,
            viewer,
            status_code=401,
            notice="That PIN didn't match.",
            notice_level="error",
        )
    logger.info("Owner mode enabled for viewer %s", viewer.user_id)
    response = _back_to_board(request)
    response.set_cookie(ADMIN_COOKIE, "1", httponly=True, samesite="lax")
    return response


@app.post("/admin/logout")
def admin_logout_form(request: Request, viewer: ViewerContext = Depends(get_viewer)):
    response = _back_to_board(request)
    response.delete_cookie(ADMIN_COOKIE)
    return response


@app.post("/events")
async def create_event_form(
    request: Request,
    title: str = Form(...),
    start_time: str = Form(...),
    description: str | None = Form(None),
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _require_admin(viewer)
    return await _form_write(
        request,
        board,
        viewer,
        crud.create_event,
        title=title,
        description=description,
        start_time=start_time,
        created_by=viewer.user_id,
    )


@app.post("/events/{event_id}/delete")
async def delete_event_form(
    event_id: str,
    request: Request,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _require_admin(viewer)
    return await _form_write(request, board, viewer, crud.delete_event, event_id)


@app.post("/banners")
async def create_banner_form(
    request: Request,
    image_url: str = Form(...),
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _require_admin(viewer)
    return await _form_write(
        request, board, viewer, crud.create_banner, image_url=image_url
    )


@app.post("/banners/{banner_id}/delete")
async def delete_banner_form(
    banner_id: str,
    request: Request,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _require_admin(viewer)
    return await _form_write(request, board, viewer, crud.delete_banner, banner_id)


# -------- JSON API (v1) --------


class EventCreatePayload(BaseModel):
    title: str
    description: str | None = None
    start_time: str = Field(..., description="Start time; ISO-8601 recommended")


class BannerCreatePayload(BaseModel):
    image_url: str


class AdminLoginPayload(BaseModel):
    pin: str


@app.get("/api/v1/session")
def api_session(
    request: Request,
    response: Response,
    viewer: ViewerContext = Depends(get_viewer),
):
    _remember_viewer(request, response)
    return {"viewer": viewer.as_dict()}


@app.get("/api/v1/events")
def api_list_events(
    request: Request,
    response: Response,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _remember_viewer(request, _no_cache(response))
    projection = board.engine.projection
    return {
        "events": [
            _serialize_event(event, include_attendees=viewer.is_admin)
            for event in projection.for_viewer(viewer.user_id)
        ],
        "sequence": projection.sequence,
        "projected_at": projection.projected_at.isoformat(),
    }


@app.get("/api/v1/events/imminent")
def api_imminent_events(
    request: Request,
    response: Response,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _remember_viewer(request, _no_cache(response))
    events = imminent_events(
        board.engine.projection.for_viewer(viewer.user_id),
        window=settings.imminent_window,
    )
    return {
        "events": [
            _serialize_event(event, include_attendees=viewer.is_admin)
            for event in events
        ],
        "window_hours": settings.imminent_window_hours,
    }


@app.post("/api/v1/events", status_code=201)
async def api_create_event(
    payload: EventCreatePayload,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _require_admin(viewer)
    event = await _run_write(
        board,
        crud.create_event,
        title=payload.title,
        description=payload.description,
        start_time=payload.start_time,
        created_by=viewer.user_id,
    )
    projected = board.engine.projection.find(event.id)
    return {
        "event": {"id": event.id, **event.data},
        "listed": projected is not None,
    }


@app.delete("/api/v1/events/{event_id}", status_code=204)
async def api_delete_event(
    event_id: str,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _require_admin(viewer)
    if not await _run_write(board, crud.delete_event, event_id):
        raise HTTPException(status_code=404, detail="Event not found")
    return Response(status_code=204)


@app.post("/api/v1/events/{event_id}/rsvp")
async def api_toggle_rsvp(
    event_id: str,
    request: Request,
    response: Response,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    event = board.engine.projection.find(event_id)
    if event is None:
        raise HTTPException(status_code=404, detail="Event not found")
    attending = await _run_write(
        board,
        crud.toggle_rsvp,
        event_id=event_id,
        user_id=viewer.user_id,
        currently_attending=viewer.user_id in event.attendee_ids,
    )
    _remember_viewer(request, response)
    return {"event_id": event_id, "attending": attending}


@app.get("/api/v1/banners")
def api_list_banners(board: Board = Depends(get_board)):
    return {"banners": [_serialize_banner(b) for b in board.engine.banners]}


@app.post("/api/v1/banners", status_code=201)
async def api_create_banner(
    payload: BannerCreatePayload,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _require_admin(viewer)
    banner = await _run_write(board, crud.create_banner, image_url=payload.image_url)
    return {"banner": _serialize_banner(banner)}


@app.delete("/api/v1/banners/{banner_id}", status_code=204)
async def api_delete_banner(
    banner_id: str,
    board: Board = Depends(get_board),
    viewer: ViewerContext = Depends(get_viewer),
):
    _require_admin(viewer)
    if not await _run_write(board, crud.delete_banner, banner_id):
        raise HTTPException(status_code=404, detail="Banner not found")
    return Response(status_code=204)


@app.get("/api/v1/carousel")
def api_carousel(board: Board = Depends(get_board)):
    banners = board.engine.banners
    current = board.carousel.current(banners)
    return {
        "index": board.carousel.index,
        "count": len(banners),
        "interval_seconds": board.carousel.interval_seconds,
        "banner": _serialize_banner(current) if current else None,
    }


@app.post("/api/v1/admin/login")
def api_admin_login(
    payload: AdminLoginPayload,
    request: Request,
    response: Response,
    viewer: ViewerContext = Depends(get_viewer),
):
    _remember_viewer(request, response)
    if not check_admin_pin(payload.pin, settings.admin_pin):
        logger.warning("Rejected owner PIN for viewer %s", viewer.user_id)
        raise HTTPException(status_code=401, detail="That PIN didn't match.")
    logger.info("Owner mode enabled for viewer %s", viewer.user_id)
    response.set_cookie(ADMIN_COOKIE, "1", httponly=True, samesite="lax")
    return {"is_admin": True}


@app.post("/api/v1/admin/logout")
def api_admin_logout(response: Response):
    response.delete_cookie(ADMIN_COOKIE)
    return {"is_admin": False}
