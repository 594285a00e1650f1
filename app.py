import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from compensation_db import (
    calculate_period_earnings_db,
    create_driver_connect_account_db,
    estimate_delivery_earnings_db,
    process_driver_payment_db,
    process_driver_payments_db,
    save_driver_earnings_db,
)
from errors import (
    AlreadyCompleted,
    AlreadyPaid,
    ConfigurationNotFound,
    InvalidStatusTransition,
    NotFound,
    ProviderError,
)
from money import fmt_money
from payout_db import process_weekly_payouts_db, update_payout_status_db
from pricing_db import (
    calculate_order_charges_db,
    get_customer_order_summary_db,
    get_detailed_order_charges_db,
    price_order_db,
    record_order_payment_db,
    save_order_charges_db,
)
from referral_db import (
    apply_farmer_referral_cashback_db,
    apply_free_delivery_if_available_db,
    create_referral_info_db,
    get_referral_stats_db,
    process_referral_db,
)
from settings import get_settings

logging.basicConfig(
    level=get_settings().log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="FreshFarmily Money Core", version="0.1.0")

# CORS middleware to allow frontend to call the API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# pydantic models (requests)
# ---------

class OrderItemIn(BaseModel):
    product_id: Optional[int] = None
    farm_id: Optional[int] = None
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., ge=0)


class DeliveryDetails(BaseModel):
    method: Literal["delivery", "pickup"] = "delivery"
    jurisdiction: Optional[str] = Field(None, description="Province code used for tax, e.g. ON")


class PricingCalculateRequest(BaseModel):
    order_id: Optional[int] = None
    user_id: Optional[int] = Field(None, description="Customer; enables the referral free-delivery check")
    items: List[OrderItemIn]
    delivery_details: Optional[DeliveryDetails] = None
    save: bool = Field(False, description="Persist the charges (requires order_id)")


class PriceStoredOrderRequest(BaseModel):
    delivery_details: Optional[DeliveryDetails] = None


class ReferralRegisterRequest(BaseModel):
    user_id: int = Field(..., description="ID of the newly registered user")
    role: Literal["farmer", "consumer"]
    referral_code: str = Field(..., description="Referral code used on signup")


class FarmerCashbackRequest(BaseModel):
    farmer_id: int


class FreeDeliveryRequest(BaseModel):
    order_id: int
    user_id: int


class ReferralInfoRequest(BaseModel):
    user_id: int


class EarningsCalculateRequest(BaseModel):
    driver_id: int
    start_date: datetime
    end_date: datetime
    save: bool = False


class EarningsEstimateRequest(BaseModel):
    order_id: Optional[int] = None
    driver_id: int
    distance_km: Decimal = Field(..., ge=0)
    time_minutes: Decimal = Field(..., ge=0)
    is_weekend_holiday: bool = False
    is_after_hours: bool = False
    is_remote_area: bool = False
    is_difficult_access: bool = False


class DriverPaymentRequest(BaseModel):
    payment_reference: Optional[str] = Field(None, description="'manual' records an off-platform payment")


class DriverPaymentBatchRequest(BaseModel):
    earnings_ids: List[int] = Field(..., min_length=1)
    payment_reference: Optional[str] = None


class ConnectAccountRequest(BaseModel):
    country: str = "CA"


class WeeklyPayoutRequest(BaseModel):
    run_date: Optional[date] = None


class PayoutStatusRequest(BaseModel):
    status: Literal["processing", "completed", "failed"]
    failure_reason: Optional[str] = None


# ---------
# helpers
# ---------

def _jsonable(value: Any) -> Any:
    """decimals -> 2dp strings, datetimes -> iso, recursively."""
    if isinstance(value, Decimal):
        return fmt_money(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def _call(fn, *args, **kwargs) -> Any:
    """
    run a ledger operation and map its errors onto HTTP statuses.
    """
    try:
        return _jsonable(fn(*args, **kwargs))
    except NotFound as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (AlreadyPaid, AlreadyCompleted, InvalidStatusTransition) as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationNotFound as e:
        logger.error("no active configuration: %s", e)
        raise HTTPException(status_code=503, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ProviderError as e:
        raise HTTPException(status_code=502, detail=f"Payment provider error: {e}")
    except Exception:
        logger.exception("unhandled error in %s", getattr(fn, "__name__", fn))
        raise HTTPException(status_code=500, detail="Internal server error")


def _structured(result: Dict[str, Any]) -> Dict[str, Any]:
    # referral rule failures come back as data, not exceptions
    if not result.get("success"):
        status = 404 if result.get("reason") == "not_found" else 400
        raise HTTPException(status_code=status, detail=result)
    return result


def _delivery(details: Optional[DeliveryDetails]) -> Optional[Dict[str, Any]]:
    return details.model_dump() if details else None


# ---------
# pricing
# ---------

@app.post("/api/pricing/calculate")
def pricing_calculate(payload: PricingCalculateRequest):
    """
    price an order draft. with save=true the charges are persisted against order_id.
    """
    if payload.save and payload.order_id is None:
        raise HTTPException(status_code=400, detail="order_id is required to save charges")

    order = {"id": payload.order_id, "items": [item.model_dump() for item in payload.items]}
    details = _delivery(payload.delivery_details)

    if not payload.save:
        return _call(calculate_order_charges_db, order, payload.user_id, details)

    def _calculate_and_save():
        return save_order_charges_db(calculate_order_charges_db(order, payload.user_id, details))

    return _call(_calculate_and_save)


@app.post("/api/pricing/orders/{order_id}/charges")
def pricing_order_charges(order_id: int, payload: Optional[PriceStoredOrderRequest] = None):
    """price a stored order from its items and save the charges."""
    details = payload.delivery_details if payload else None
    return _call(price_order_db, order_id, _delivery(details))


@app.get("/api/pricing/orders/{order_id}/charges")
def pricing_order_charges_detail(order_id: int):
    return _call(get_detailed_order_charges_db, order_id)


@app.get("/api/pricing/orders/{order_id}/summary")
def pricing_order_summary(order_id: int):
    return _call(get_customer_order_summary_db, order_id)


@app.post("/api/orders/{order_id}/payment-succeeded")
def order_payment_succeeded(order_id: int):
    """
    payment confirmation hook: records one farmer payment per farm in the order.
    a second call for the same order is a 409.
    """
    return _call(record_order_payment_db, order_id)


# ---------
# referral
# ---------

@app.post("/api/referral/register")
def referral_register(payload: ReferralRegisterRequest):
    """
    attach a newly registered user to the owner of referral_code.
    rule violations come back as 400 with {reason, message}.
    """
    result = _call(process_referral_db, payload.referral_code, payload.user_id, payload.role)
    return _structured(result)


@app.post("/api/referral/info")
def referral_info(payload: ReferralInfoRequest):
    """return the user's referral codes and balances, creating them on first use."""
    return _call(create_referral_info_db, payload.user_id)


@app.post("/api/referral/farmer-cashback")
def referral_farmer_cashback(payload: FarmerCashbackRequest):
    result = _call(apply_farmer_referral_cashback_db, payload.farmer_id)
    return _structured(result)


@app.post("/api/referral/free-delivery")
def referral_free_delivery(payload: FreeDeliveryRequest):
    result = _call(apply_free_delivery_if_available_db, payload.order_id, payload.user_id)
    return _structured(result)


@app.get("/api/referral/stats")
def referral_stats(user_id: int = Query(..., description="User ID to fetch referral stats for")):
    result = _call(get_referral_stats_db, user_id)
    return _structured(result)


# ---------
# driver compensation
# ---------

@app.post("/api/driver/earnings/calculate")
def driver_earnings_calculate(payload: EarningsCalculateRequest):
    """draft earnings for a pay period; save=true stores them (one record per period)."""
    if payload.end_date < payload.start_date:
        raise HTTPException(status_code=400, detail="end_date must not be before start_date")

    if not payload.save:
        return _call(calculate_period_earnings_db, payload.driver_id, payload.start_date, payload.end_date)

    def _calculate_and_save():
        draft = calculate_period_earnings_db(payload.driver_id, payload.start_date, payload.end_date)
        return save_driver_earnings_db(draft)

    return _call(_calculate_and_save)


@app.post("/api/driver/earnings/estimate")
def driver_earnings_estimate(payload: EarningsEstimateRequest):
    flags = {
        "is_weekend_holiday": payload.is_weekend_holiday,
        "is_after_hours": payload.is_after_hours,
        "is_remote_area": payload.is_remote_area,
        "is_difficult_access": payload.is_difficult_access,
    }
    return _call(
        estimate_delivery_earnings_db,
        payload.order_id,
        payload.driver_id,
        payload.distance_km,
        payload.time_minutes,
        flags,
    )


@app.post("/api/driver/earnings/pay-batch")
def driver_earnings_pay_batch(payload: DriverPaymentBatchRequest):
    return _call(process_driver_payments_db, payload.earnings_ids, payload.payment_reference)


@app.post("/api/driver/earnings/{earnings_id}/pay")
def driver_earnings_pay(earnings_id: int, payload: Optional[DriverPaymentRequest] = None):
    """
    pay one earnings record. paying an already paid record is a 409;
    a provider failure is a 502 and leaves the record unpaid.
    """
    reference = payload.payment_reference if payload else None
    return _call(process_driver_payment_db, earnings_id, reference)


@app.post("/api/driver/{driver_id}/connect-account")
def driver_connect_account(driver_id: int, payload: Optional[ConnectAccountRequest] = None):
    country = payload.country if payload else "CA"
    return _call(create_driver_connect_account_db, driver_id, country)


# ---------
# farmer payouts
# ---------

@app.post("/api/payouts/weekly")
def payouts_weekly(payload: Optional[WeeklyPayoutRequest] = None):
    """
    batch unpaid farmer payments into one payout per farmer.
    farmers that fail are listed under `failures`; the rest still commit.
    """
    run_date = payload.run_date if payload else None
    return _call(process_weekly_payouts_db, run_date)


@app.post("/api/payouts/{payout_id}/status")
def payouts_status(payout_id: int, payload: PayoutStatusRequest):
    return _call(update_payout_status_db, payout_id, payload.status, payload.failure_reason)
