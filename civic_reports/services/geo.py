"""
Spatial index over report locations and the nearby query built on it.

Reports carry a `geo_cell` key written from their point. A nearby query asks
the index for the cells that can hold points within the radius, narrows the
SQL query to those cells, then filters and orders the candidates by exact
great-circle distance.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
import uuid

import h3
from sqlmodel import Session, select

from civic_reports.models.report import Report, ReportCategory, ReportStatus, Severity
from civic_reports.utils.errors import ValidationError


DEFAULT_RADIUS = 5000
MIN_RADIUS, MAX_RADIUS = 100, 50000
DEFAULT_LIMIT = 100
MIN_LIMIT, MAX_LIMIT = 1, 100


class SpatialIndex:
    def cell_for(self, lat: float, lng: float) -> str:
        raise NotImplementedError

    def covering_cells(self, lat: float, lng: float, radius: float) -> Optional[List[str]]:
        """Cells that may contain points within `radius` metres, or None to scan everything."""
        raise NotImplementedError


class H3SpatialIndex(SpatialIndex):
    def __init__(self, resolution: int = 6):
        self.resolution = resolution
        # H3 cells shrink to roughly half the average edge towards the pentagons
        self.min_edge = h3.average_hexagon_edge_length(resolution, unit="m") / 2

    def cell_for(self, lat, lng):
        return h3.latlng_to_cell(lat, lng, self.resolution)

    def rings_for(self, radius: float) -> int:
        # neighbouring centres in ring k are at least 1.5 * k * edge apart
        return math.ceil((radius + 2 * self.min_edge) / (1.5 * self.min_edge))

    def covering_cells(self, lat, lng, radius):
        origin = self.cell_for(lat, lng)
        return list(h3.grid_disk(origin, self.rings_for(radius)))


class HaversineScan(SpatialIndex):
    """No prefilter, every report is a candidate."""

    def cell_for(self, lat, lng):
        return ""

    def covering_cells(self, lat, lng, radius):
        return None


default_index = H3SpatialIndex()


def distance_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    return h3.great_circle_distance((lat1, lng1), (lat2, lng2), unit="m")


@dataclass
class NearbyQuery:
    lat: float
    lng: float
    radius: int = DEFAULT_RADIUS
    limit: int = DEFAULT_LIMIT
    status: Optional[ReportStatus] = None
    category: Optional[ReportCategory] = None


@dataclass
class NearbyReport:
    id: uuid.UUID
    title: str
    category: ReportCategory
    severity: Severity
    status: ReportStatus
    location: dict
    upvotes: int
    created_at: datetime
    user_id: Optional[int]
    distance: float


def validate_nearby_query(query: NearbyQuery):
    errors = []

    if not -90 <= query.lat <= 90:
        errors.append("Latitude must be between -90 and 90")
    if not -180 <= query.lng <= 180:
        errors.append("Longitude must be between -180 and 180")
    if not MIN_RADIUS <= query.radius <= MAX_RADIUS:
        errors.append(f"Radius must be between {MIN_RADIUS} and {MAX_RADIUS} meters")
    if not MIN_LIMIT <= query.limit <= MAX_LIMIT:
        errors.append(f"Limit must be between {MIN_LIMIT} and {MAX_LIMIT}")

    if errors:
        raise ValidationError("Invalid query parameters", errors=errors)


def find_nearby(session: Session, query: NearbyQuery, index: SpatialIndex = default_index) -> List[NearbyReport]:
    validate_nearby_query(query)

    stmt = select(Report)

    cells = index.covering_cells(query.lat, query.lng, query.radius)
    if cells is not None:
        stmt = stmt.where(Report.geo_cell.in_(cells))

    if query.status:
        stmt = stmt.where(Report.status == query.status)

    if query.category:
        stmt = stmt.where(Report.category == query.category)

    matches = []
    for report in session.exec(stmt):
        d = distance_m(query.lat, query.lng, report.latitude, report.longitude)
        if d <= query.radius:
            matches.append((d, report))

    # nearest first, newest first on ties
    matches.sort(key=lambda m: (m[0], -m[1].created_at.timestamp()))

    return [
        NearbyReport(
            id=report.id,
            title=report.title,
            category=report.category,
            severity=report.severity,
            status=report.status,
            location={
                "coordinates": [report.longitude, report.latitude],
                "name": report.location_name,
            },
            upvotes=report.upvotes,
            created_at=report.created_at,
            user_id=report.user_id,
            distance=round(d, 1),
        )
        for d, report in matches[:query.limit]
    ]
