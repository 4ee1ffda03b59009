"""Geolocation collaborator: great-circle distances and nearby agent lookup."""

from dataclasses import dataclass
from decimal import Decimal
import logging
import math
from typing import Optional

from sqlalchemy.orm import Session

from fulfillment.errors import InvalidInputError, NotFoundError
from fulfillment.models import User
from fulfillment.statuses import UserRole
from fulfillment.utils import utcnow


logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
DEFAULT_SEARCH_RADIUS_KM = Decimal("10")


@dataclass(frozen=True)
class NearbyAgent:
    agent: User
    distance_km: Decimal


def haversine_km(lat1, lng1, lat2, lng2) -> Decimal:
    lat1, lng1, lat2, lng2 = (float(value) for value in (lat1, lng1, lat2, lng2))
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return Decimal(str(round(EARTH_RADIUS_KM * c, 2)))


def distance_between(origin: tuple, destination: tuple) -> Optional[Decimal]:
    """Distance in km, or None when either point is incomplete."""
    if any(value is None for value in (*origin, *destination)):
        return None
    return haversine_km(origin[0], origin[1], destination[0], destination[1])


def find_nearby_agents(
    db: Session,
    *,
    latitude,
    longitude,
    radius_km=DEFAULT_SEARCH_RADIUS_KM,
) -> list[NearbyAgent]:
    agents = (
        db.query(User)
        .filter(
            User.role == UserRole.AGENT.value,
            User.is_active.is_(True),
            User.is_online.is_(True),
            User.current_latitude.isnot(None),
            User.current_longitude.isnot(None),
        )
        .all()
    )
    radius = Decimal(str(radius_km))
    nearby = []
    for agent in agents:
        distance = haversine_km(latitude, longitude, agent.current_latitude, agent.current_longitude)
        if distance <= radius:
            nearby.append(NearbyAgent(agent=agent, distance_km=distance))
    nearby.sort(key=lambda match: (match.distance_km, match.agent.id))
    logger.debug("Nearby agents within %skm of (%s, %s): %s", radius, latitude, longitude, len(nearby))
    return nearby


def is_within_delivery_radius(agent: User, latitude, longitude) -> bool:
    if agent.current_latitude is None or agent.current_longitude is None:
        return False
    distance = haversine_km(agent.current_latitude, agent.current_longitude, latitude, longitude)
    return distance <= Decimal(agent.max_delivery_radius_km or DEFAULT_SEARCH_RADIUS_KM)


def update_agent_location(db: Session, *, agent_id: int, latitude, longitude, is_online: Optional[bool] = None) -> User:
    agent = db.query(User).filter(User.id == agent_id, User.role == UserRole.AGENT.value).first()
    if not agent:
        raise NotFoundError("Agent", agent_id)
    if not (-90 <= float(latitude) <= 90 and -180 <= float(longitude) <= 180):
        raise InvalidInputError("Coordinates are out of range.")
    agent.current_latitude = latitude
    agent.current_longitude = longitude
    agent.location_updated_at = utcnow()
    if is_online is not None:
        agent.is_online = is_online
    db.flush()
    return agent
