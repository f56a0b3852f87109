from typing import Optional

from clients.couchbase import TransactionContext, run_transaction, transactional
from models.entities.couchbase.courier_profiles import CapacityLedger, CourierProfile, CourierProfileData
from models.errors import CourierNotFound, OrderValidationError


async def courier_profile_get(courier_id: str) -> Optional[CourierProfile]:
    return await CourierProfile.get(courier_id)


@transactional()
async def courier_profile_save(
    courier_id: str,
    vehicle_type: Optional[str] = None,
    max_concurrent_orders: Optional[int] = None,
) -> CourierProfile:
    """Create the courier's profile or change its settings, keeping the live slot count."""
    if max_concurrent_orders is not None and max_concurrent_orders <= 0:
        raise OrderValidationError("max_concurrent_orders must be positive")

    async def logic(tx: TransactionContext) -> CourierProfile:
        profile = await CourierProfile.tx_get(tx, courier_id)
        if profile is None:
            ledger = CapacityLedger(max_concurrent_orders=max_concurrent_orders or 1)
            data = CourierProfileData(user_id=courier_id, vehicle_type=vehicle_type, availability=ledger)
            return await CourierProfile.tx_create(tx, data, key=courier_id, user_id=courier_id)

        if vehicle_type is not None:
            profile.data.vehicle_type = vehicle_type
        if max_concurrent_orders is not None:
            ledger = profile.data.availability
            if max_concurrent_orders < ledger.active_orders:
                raise OrderValidationError(
                    f"Courier has {ledger.active_orders} active orders, cannot lower the maximum to {max_concurrent_orders}"
                )
            ledger.max_concurrent_orders = max_concurrent_orders
            ledger.set_available(ledger.is_available)
        return await CourierProfile.tx_update(tx, profile)

    return await run_transaction(logic)


@transactional()
async def courier_set_availability(courier_id: str, available: bool) -> CourierProfile:
    """Toggle availability; a courier at capacity stays unavailable."""

    async def logic(tx: TransactionContext) -> CourierProfile:
        profile = await CourierProfile.tx_get(tx, courier_id)
        if profile is None:
            raise CourierNotFound(courier_id)
        profile.data.availability.set_available(available)
        return await CourierProfile.tx_update(tx, profile)

    return await run_transaction(logic)
