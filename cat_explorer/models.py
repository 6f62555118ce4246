from geoalchemy2 import Geography
from sqlalchemy import Column, Float, String, Text, DateTime, JSON, CheckConstraint, Index
from sqlalchemy.orm import deferred
from sqlalchemy.types import TypeDecorator

from .database import Base
from .geo import WGS84_SRID


class GeographyPoint(TypeDecorator):
    """PostGIS ``geography(POINT, 4326)``; EWKT text on engines without PostGIS."""

    impl = Text
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == "postgresql":
            # The GIST index is declared on the table below
            return dialect.type_descriptor(
                Geography(geometry_type="POINT", srid=WGS84_SRID, spatial_index=False)
            )
        return dialect.type_descriptor(Text())


class CatSighting(Base):
    __tablename__ = "cat_sightings"

    id = Column(String(32), primary_key=True)
    name = Column(String, nullable=False)
    image = Column(Text, nullable=False)  # http(s) URL, /uploads/ path or data: URI
    description = Column(String, nullable=True)
    # Spatial index target; latitude/longitude below are the plain-number copy served to clients
    geom = deferred(Column(GeographyPoint(), nullable=False))
    longitude = Column(Float, nullable=False)
    latitude = Column(Float, nullable=False)
    address = Column(String, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    owner_id = Column(String, nullable=False, index=True)
    owner_email = Column(String, nullable=True)
    last_editor_email = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("ix_cat_sightings_geom_gist", "geom", postgresql_using="gist"),
        CheckConstraint("latitude >= -90 AND latitude <= 90", name="cat_sightings_latitude_check"),
        CheckConstraint("longitude >= -180 AND longitude <= 180", name="cat_sightings_longitude_check"),
        CheckConstraint("updated_at >= created_at", name="cat_sightings_updated_after_created_check"),
    )
