"""Persistence and spatial retrieval of cat sightings.

``SightingStore`` is the only data-access path. Each call performs a single
round trip, maps driver failures onto :mod:`cat_explorer.errors` and never
retries; resubmission is the caller's business.
"""

import base64
import binascii
import logging
import math
import re
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional
from urllib.parse import urlparse

from geoalchemy2.functions import ST_DWithin, ST_Distance
from sqlalchemy import cast, literal, update as sql_update
from sqlalchemy.exc import DBAPIError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

from .errors import InvalidId, NotFound, UpstreamTimeout, UpstreamUnavailable, ValidationError
from .geo import GeoPoint
from .identity import Identity
from .models import CatSighting, GeographyPoint

logger = logging.getLogger(__name__)

DEFAULT_RECENT_LIMIT = 20
DEFAULT_NEAR_LIMIT = 50
DEFAULT_RADIUS_KM = 10.0
MAX_TAG_LENGTH = 64

_ID_RE = re.compile(r"^[0-9a-f]{32}$")
_DATA_URI_RE = re.compile(r"^data:image/[a-zA-Z0-9.+-]+;base64,(?P<payload>.*)$", re.DOTALL)
# Postgres SQLSTATE for query_canceled, raised when statement_timeout fires
_STATEMENT_TIMEOUT_PGCODE = "57014"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything we write is UTC
    if value is None:
        return None
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def new_sighting_id() -> str:
    return uuid.uuid4().hex


def check_sighting_id(sighting_id: str) -> str:
    if not isinstance(sighting_id, str) or not _ID_RE.match(sighting_id):
        raise InvalidId()
    return sighting_id


def _clean_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError("name is required")
    return value.strip()


def _clean_tags(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, (list, tuple)):
        raise ValidationError("tags must be a list or a comma-separated string")
    tags = []
    for tag in value:
        if not isinstance(tag, str):
            raise ValidationError("tags must be strings")
        tag = tag.strip()
        if not tag:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f"tags must be at most {MAX_TAG_LENGTH} characters")
        tags.append(tag)
    return tags


class SightingStore:
    def __init__(self, db: Session, max_image_bytes: int = 1024 * 1024):
        self.db = db
        self.max_image_bytes = max_image_bytes

    @contextmanager
    def _upstream(self, action: str) -> Iterator[None]:
        try:
            yield
        except PoolTimeoutError as exc:
            self.db.rollback()
            logger.exception("Store %s timed out waiting for a connection", action)
            raise UpstreamTimeout() from exc
        except DBAPIError as exc:
            self.db.rollback()
            if getattr(exc.orig, "pgcode", None) == _STATEMENT_TIMEOUT_PGCODE:
                logger.exception("Store %s exceeded statement timeout", action)
                raise UpstreamTimeout() from exc
            logger.exception("Store %s failed", action)
            raise UpstreamUnavailable() from exc

    def _clean_image(self, value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise ValidationError("image is required")
        value = value.strip()

        match = _DATA_URI_RE.match(value)
        if match:
            payload = match.group("payload")
            # Cheap size check before decoding a potentially huge payload
            if len(payload) * 3 // 4 > self.max_image_bytes + 2:
                raise ValidationError(f"image exceeds {self.max_image_bytes} bytes")
            try:
                raw = base64.b64decode(payload, validate=True)
            except (binascii.Error, ValueError) as exc:
                raise ValidationError("image is not valid base64") from exc
            if len(raw) > self.max_image_bytes:
                raise ValidationError(f"image exceeds {self.max_image_bytes} bytes")
            return value

        if value.startswith("/uploads/"):
            return value
        parsed = urlparse(value)
        if parsed.scheme in ("http", "https") and parsed.netloc:
            return value
        raise ValidationError("image must be an http(s) URL, an uploaded file path or a base64 data URI")

    def _clean_location(self, value: Any) -> Dict[str, Any]:
        if not isinstance(value, Mapping) or value.get("coordinates") is None:
            raise ValidationError("location.coordinates is required")
        point = GeoPoint.from_lnglat(value["coordinates"])
        address = value.get("address")
        if address is not None and not isinstance(address, str):
            raise ValidationError("location.address must be a string")
        return {"point": point, "address": address}

    def create(self, record: Mapping[str, Any], identity: Identity) -> CatSighting:
        """Validate and persist a new sighting owned by ``identity``."""
        name = _clean_name(record.get("name"))
        image = self._clean_image(record.get("image"))
        location = self._clean_location(record.get("location"))
        tags = _clean_tags(record.get("tags"))
        description = record.get("description")
        if description is not None and not isinstance(description, str):
            raise ValidationError("description must be a string")

        now = utcnow()
        row = CatSighting(
            id=new_sighting_id(),
            name=name,
            image=image,
            description=description,
            latitude=location["point"].latitude,
            longitude=location["point"].longitude,
            geom=location["point"].to_ewkt(),
            address=location["address"],
            tags=tags,
            owner_id=identity.subject,
            owner_email=identity.email,
            last_editor_email=identity.email,
            created_at=now,
            updated_at=now,
        )
        with self._upstream("create"):
            self.db.add(row)
            self.db.commit()
        logger.info("Saved sighting id=%s owner=%s", row.id, row.owner_id)
        return row

    def get_by_id(self, sighting_id: str) -> CatSighting:
        check_sighting_id(sighting_id)
        with self._upstream("get"):
            row = self.db.query(CatSighting).filter(CatSighting.id == sighting_id).first()
        if row is None:
            raise NotFound()
        return row

    def list_recent(self, limit: int = DEFAULT_RECENT_LIMIT) -> List[CatSighting]:
        with self._upstream("list_recent"):
            return (
                self.db.query(CatSighting)
                .order_by(CatSighting.created_at.desc(), CatSighting.id.desc())
                .limit(limit)
                .all()
            )

    def near_query(self, point: GeoPoint, radius_km: float, limit: int):
        """Radius query answered by the geography index, nearest first."""
        if not math.isfinite(radius_km) or radius_km < 0:
            raise ValidationError("distance must be a non-negative number")
        origin = cast(literal(point.to_ewkt()), GeographyPoint())
        return (
            self.db.query(CatSighting)
            .filter(ST_DWithin(CatSighting.geom, origin, radius_km * 1000))
            .order_by(ST_Distance(CatSighting.geom, origin), CatSighting.id)
            .limit(limit)
        )

    def list_near(
        self,
        point: GeoPoint,
        radius_km: float = DEFAULT_RADIUS_KM,
        limit: int = DEFAULT_NEAR_LIMIT,
    ) -> List[CatSighting]:
        query = self.near_query(point, radius_km, limit)
        with self._upstream("list_near"):
            return query.all()

    def update(self, sighting_id: str, patch: Mapping[str, Any], identity: Identity) -> CatSighting:
        check_sighting_id(sighting_id)

        # Validate the whole patch before touching the row
        changes: Dict[str, Any] = {}
        if patch.get("name") is not None:
            changes["name"] = _clean_name(patch["name"])
        if patch.get("image") is not None:
            changes["image"] = self._clean_image(patch["image"])
        if patch.get("description") is not None:
            if not isinstance(patch["description"], str):
                raise ValidationError("description must be a string")
            changes["description"] = patch["description"]
        if patch.get("tags") is not None:
            changes["tags"] = _clean_tags(patch["tags"])
        location = patch.get("location")
        if location is not None:
            if not isinstance(location, Mapping):
                raise ValidationError("location must be an object")
            if location.get("coordinates") is not None:
                point = GeoPoint.from_lnglat(location["coordinates"])
                changes["latitude"] = point.latitude
                changes["longitude"] = point.longitude
                changes["geom"] = point.to_ewkt()
            if location.get("address") is not None:
                if not isinstance(location["address"], str):
                    raise ValidationError("location.address must be a string")
                changes["address"] = location["address"]

        stmt = (
            sql_update(CatSighting)
            .where(CatSighting.id == sighting_id)
            .values(**changes, updated_at=utcnow(), last_editor_email=identity.email)
            .returning(CatSighting)
        )
        with self._upstream("update"):
            row = self.db.execute(stmt, execution_options={"synchronize_session": "fetch"}).scalars().first()
            if row is None:
                self.db.rollback()
                raise NotFound()
            self.db.commit()
        logger.info("Updated sighting id=%s editor=%s fields=%s", row.id, identity.email, sorted(changes))
        return row

    def delete(self, sighting_id: str) -> None:
        check_sighting_id(sighting_id)
        with self._upstream("delete"):
            deleted = self.db.query(CatSighting).filter(CatSighting.id == sighting_id).delete()
            self.db.commit()
        if not deleted:
            raise NotFound()
        logger.info("Deleted sighting id=%s", sighting_id)
