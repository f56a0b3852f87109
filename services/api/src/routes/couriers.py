from typing import List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from models.entities.couchbase.courier_profiles import CourierProfile, CourierProfileData
from models.entities.couchbase.notifications import NotificationData
from models.errors import CourierNotFound
from models.operations.courier_profiles import courier_profile_get, courier_profile_save, courier_set_availability
from models.operations.notifications import notification_list_rescue_requests
from utils import log
from .dependencies import actor_id_get

logger = log.get_logger(__name__)

router = APIRouter(prefix="/couriers", tags=["couriers"])


class SaveProfileRequest(BaseModel):
    vehicle_type: Optional[Literal["walk", "bicycle", "motorbike", "car"]] = None
    max_concurrent_orders: Optional[int] = Field(default=None, gt=0)


class AvailabilityRequest(BaseModel):
    is_available: bool


class CourierProfileResponse(CourierProfileData):
    id: str


class RescueRequestResponse(NotificationData):
    id: str


def _profile_to_response(profile: CourierProfile) -> CourierProfileResponse:
    return CourierProfileResponse(id=profile.id, **profile.data.model_dump())


@router.get("/me", response_model=CourierProfileResponse)
async def route_courier_profile_get(actor_id: str = Depends(actor_id_get)):
    profile = await courier_profile_get(actor_id)
    if profile is None:
        raise CourierNotFound(actor_id)
    return _profile_to_response(profile)


@router.put("/me", response_model=CourierProfileResponse)
async def route_courier_profile_save(body: SaveProfileRequest, actor_id: str = Depends(actor_id_get)):
    profile = await courier_profile_save(actor_id, body.vehicle_type, body.max_concurrent_orders)
    return _profile_to_response(profile)


@router.put("/me/availability", response_model=CourierProfileResponse)
async def route_courier_availability(body: AvailabilityRequest, actor_id: str = Depends(actor_id_get)):
    profile = await courier_set_availability(actor_id, body.is_available)
    return _profile_to_response(profile)


@router.get("/me/rescue-requests", response_model=List[RescueRequestResponse])
async def route_rescue_requests(actor_id: str = Depends(actor_id_get)):
    requests = await notification_list_rescue_requests(actor_id)
    return [RescueRequestResponse(id=n.id, **n.data.model_dump()) for n in requests]
