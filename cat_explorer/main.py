import logging
import os
import pathlib
import uuid
from contextlib import asynccontextmanager
from typing import List, Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, File, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from . import __version__
from .config import Settings
from .database import build_engine, build_session_factory, get_db, init_schema
from .errors import Unauthorized, ValidationError, register_error_handlers
from .geo import GeoPoint
from .identity import (
    ADMIN_ROLE,
    GoogleIdentityVerifier,
    Identity,
    IdentityVerifier,
    SessionTokens,
    AdminPolicy,
    require_admin,
    require_identity,
)
from .schemas import (
    DeleteResponse,
    SessionRequest,
    SessionResponse,
    SightingCreate,
    SightingResponse,
    SightingUpdate,
    UploadResponse,
    UserOut,
)
from .store import (
    DEFAULT_NEAR_LIMIT,
    DEFAULT_RADIUS_KM,
    DEFAULT_RECENT_LIMIT,
    SightingStore,
    check_sighting_id,
)

logger = logging.getLogger("cat-api")

ALLOWED_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}

router = APIRouter()


def get_store(request: Request, db: Session = Depends(get_db)) -> SightingStore:
    return SightingStore(db, max_image_bytes=request.app.state.settings.max_image_bytes)


def _user_out(request: Request, identity: Identity) -> UserOut:
    return UserOut(
        id=identity.subject,
        email=identity.email,
        is_admin=request.app.state.admin_policy.has_role(identity, ADMIN_ROLE),
    )


@router.get("/")
def read_root():
    return {"message": "Cat Explorer API", "version": __version__}


@router.get("/api/cats", response_model=List[SightingResponse])
def list_cat_sightings(
    lat: Optional[float] = Query(None, ge=-90, le=90),
    lng: Optional[float] = Query(None, ge=-180, le=180),
    distance: float = Query(DEFAULT_RADIUS_KM, gt=0, le=20038, description="Search radius in km"),
    limit: Optional[int] = Query(None, ge=1, le=100),
    store: SightingStore = Depends(get_store),
):
    if (lat is None) != (lng is None):
        raise ValidationError("lat and lng must be provided together")

    if lat is not None:
        rows = store.list_near(GeoPoint(latitude=lat, longitude=lng), distance, limit or DEFAULT_NEAR_LIMIT)
    else:
        rows = store.list_recent(limit or DEFAULT_RECENT_LIMIT)
    return [SightingResponse.from_row(row) for row in rows]


@router.get("/api/cats/{sighting_id}", response_model=SightingResponse)
def get_cat_sighting(
    sighting_id: str = Depends(check_sighting_id),
    store: SightingStore = Depends(get_store),
):
    return SightingResponse.from_row(store.get_by_id(sighting_id))


@router.post("/api/cats", response_model=SightingResponse, status_code=201)
def create_cat_sighting(
    sighting: SightingCreate,
    identity: Identity = Depends(require_identity),
    store: SightingStore = Depends(get_store),
):
    row = store.create(sighting.model_dump(), identity)
    return SightingResponse.from_row(row)


@router.put("/api/cats/{sighting_id}", response_model=SightingResponse)
def update_cat_sighting(
    patch: SightingUpdate,
    sighting_id: str = Depends(check_sighting_id),
    identity: Identity = Depends(require_admin),
    store: SightingStore = Depends(get_store),
):
    row = store.update(sighting_id, patch.model_dump(exclude_unset=True), identity)
    return SightingResponse.from_row(row)


@router.delete("/api/cats/{sighting_id}", response_model=DeleteResponse)
def delete_cat_sighting(
    sighting_id: str = Depends(check_sighting_id),
    identity: Identity = Depends(require_admin),
    store: SightingStore = Depends(get_store),
):
    store.delete(sighting_id)
    logger.info("Sighting id=%s deleted by %s", sighting_id, identity.email)
    return DeleteResponse(message="Cat sighting deleted", id=sighting_id)


@router.post("/api/upload", response_model=UploadResponse)
async def upload_image(
    request: Request,
    identity: Identity = Depends(require_identity),
    file: UploadFile = File(...),
):
    if not file.content_type or not file.content_type.startswith("image/"):
        raise ValidationError("Only image uploads are allowed")
    settings: Settings = request.app.state.settings
    ext = pathlib.Path(file.filename or "").suffix.lower()
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        ext = ".jpg"
    name = f"{uuid.uuid4().hex}{ext}"
    dest_path = pathlib.Path(settings.upload_dir) / name
    written = 0
    too_large = False
    try:
        with dest_path.open("wb") as out:
            while True:
                chunk = await file.read(1024 * 1024)
                if not chunk:
                    break
                written += len(chunk)
                if written > settings.max_image_bytes:
                    too_large = True
                    break
                out.write(chunk)
    finally:
        await file.close()
    if too_large:
        dest_path.unlink(missing_ok=True)
        raise ValidationError(f"image exceeds {settings.max_image_bytes} bytes")
    logger.info("Stored upload %s (%d bytes) for %s", name, written, identity.subject)
    return UploadResponse(url=f"/uploads/{name}")


@router.post("/api/auth/session", response_model=SessionResponse)
def create_session(body: SessionRequest, request: Request):
    identity = request.app.state.identity_verifier.verify(body.id_token)
    if identity is None:
        raise Unauthorized("Invalid ID token")
    tokens: SessionTokens = request.app.state.session_tokens
    logger.info("Issued session for sub=%s", identity.subject)
    return SessionResponse(
        access_token=tokens.issue(identity),
        expires_in=tokens.ttl_seconds,
        user=_user_out(request, identity),
    )


@router.get("/api/auth/me", response_model=UserOut)
def read_current_user(request: Request, identity: Identity = Depends(require_identity)):
    return _user_out(request, identity)


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    identity_verifier: Optional[IdentityVerifier] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    engine = engine or build_engine(settings.database_url, settings.store_timeout_seconds)
    init_schema(engine)

    http_client = None
    if identity_verifier is None:
        http_client = httpx.Client(timeout=settings.identity_timeout_seconds)
        identity_verifier = GoogleIdentityVerifier(http_client, client_id=settings.google_client_id)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if http_client is not None:
            http_client.close()
        engine.dispose()

    app = FastAPI(title="Cat Explorer API", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.identity_verifier = identity_verifier
    app.state.session_tokens = SessionTokens(settings.session_secret, settings.session_ttl_seconds)
    app.state.admin_policy = AdminPolicy(settings.admin_emails)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    register_error_handlers(app)

    # Static uploads directory
    os.makedirs(settings.upload_dir, exist_ok=True)
    app.mount("/uploads", StaticFiles(directory=settings.upload_dir), name="uploads")

    app.include_router(router)
    logger.info("Cat Explorer API ready (admins configured: %d)", len(settings.admin_emails))
    return app
