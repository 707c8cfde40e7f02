"""
Shipping fee calculation.

calculate_shipping_fee is pure: it works on a settings snapshot and a zipcode
table handed in by the caller. The *_for_order helpers read both from the DB.
"""
import re
from dataclasses import dataclass, field, asdict
from typing import Optional

from flask import current_app

REGION_JEJU = 'jeju'
REGION_MOUNTAIN = 'mountain'

# Jeju zipcodes are 63000-63644
JEJU_ZIPCODE_RANGE = (63000, 63644)
DEFAULT_JEJU_ADDITIONAL_FEE = 3000

_ZIPCODE = re.compile(r'^[0-9]{5}$')


class ShippingSettingsError(Exception):
    """Raised when no active shipping settings are configured."""


@dataclass(frozen=True)
class ShippingSettingsSnapshot:
    base_shipping_fee: int
    free_shipping_threshold: int
    jeju_additional_fee: int = DEFAULT_JEJU_ADDITIONAL_FEE
    mountain_additional_fee: int = 0

    @classmethod
    def from_model(cls, settings):
        return cls(
            base_shipping_fee=settings.base_shipping_fee,
            free_shipping_threshold=settings.free_shipping_threshold,
            jeju_additional_fee=settings.jeju_additional_fee,
            mountain_additional_fee=settings.mountain_additional_fee,
        )


@dataclass(frozen=True)
class ZipcodeEntry:
    region_type: str
    additional_fee: int
    region_name: Optional[str] = None


@dataclass
class RegionInfo:
    is_jeju: bool = False
    is_mountain: bool = False
    region_name: Optional[str] = None
    additional_fee: int = 0


class ZipcodeTable:
    """Exact zipcode entries, consulted before inclusive range rules."""

    def __init__(self, entries=None, ranges=None):
        self.entries = {}
        self.ranges = []
        for zipcode, entry in (entries or {}).items():
            self.add(zipcode, entry)
        for start, end, entry in ranges or []:
            self.add_range(start, end, entry)

    def add(self, zipcode, entry):
        if isinstance(entry, dict):
            entry = ZipcodeEntry(**entry)
        self.entries[zipcode] = entry

    def add_range(self, start, end, entry):
        if isinstance(entry, dict):
            entry = ZipcodeEntry(**entry)
        self.ranges.append((int(start), int(end), entry))

    def find(self, zipcode) -> Optional[ZipcodeEntry]:
        entry = self.entries.get(zipcode)
        if entry is not None:
            return entry
        if not is_valid_zipcode(zipcode):
            return None
        code = int(zipcode)
        for start, end, ranged in self.ranges:
            if start <= code <= end:
                return ranged
        return None

    def lookup(self, zipcode) -> RegionInfo:
        entry = self.find(zipcode)
        if entry is None:
            return RegionInfo()
        return RegionInfo(
            is_jeju=entry.region_type == REGION_JEJU,
            is_mountain=entry.region_type == REGION_MOUNTAIN,
            region_name=entry.region_name,
            additional_fee=entry.additional_fee,
        )


@dataclass
class ShippingFeeResult:
    base_shipping_fee: int
    additional_fee: int
    total_shipping_fee: int
    is_free_shipping: bool
    free_shipping_threshold: int
    region_info: RegionInfo = field(default_factory=RegionInfo)
    message: str = ''

    def to_dict(self):
        return asdict(self)


def is_valid_zipcode(zipcode) -> bool:
    return isinstance(zipcode, str) and bool(_ZIPCODE.fullmatch(zipcode))


def format_zipcode(zipcode) -> str:
    """Keep digits only, at most 5."""
    return re.sub(r'\D', '', zipcode or '')[:5]


def is_jeju_by_zipcode(zipcode) -> bool:
    if not is_valid_zipcode(zipcode):
        return False
    return JEJU_ZIPCODE_RANGE[0] <= int(zipcode) <= JEJU_ZIPCODE_RANGE[1]


def _won(amount):
    return f"{amount:,} KRW"


def _build_message(result, order_amount):
    region = result.region_info.region_name or 'remote area'
    if result.is_free_shipping:
        if result.additional_fee:
            return f"Free shipping ({region} surcharge {_won(result.additional_fee)})"
        return "Free shipping"
    remaining = result.free_shipping_threshold - order_amount
    if result.additional_fee:
        return (
            f"{_won(result.total_shipping_fee)} (includes {region} surcharge) - "
            f"add {_won(remaining)} more to waive the base fee"
        )
    return f"{_won(result.total_shipping_fee)} - add {_won(remaining)} more for free shipping"


def calculate_shipping_fee(order_amount, zipcode, settings, zipcode_table=None,
                           waive_surcharge_on_free_shipping=False) -> ShippingFeeResult:
    """
    Fee breakdown for an order.

    order_amount and zipcode must already be validated by the caller.
    Reaching the free-shipping threshold waives the base fee. The regional
    surcharge is still charged unless waive_surcharge_on_free_shipping is set.
    """
    region = (zipcode_table or ZipcodeTable()).lookup(zipcode)
    is_free_shipping = order_amount >= settings.free_shipping_threshold

    base_fee = 0 if is_free_shipping else settings.base_shipping_fee
    additional_fee = region.additional_fee
    if is_free_shipping and waive_surcharge_on_free_shipping:
        additional_fee = 0

    result = ShippingFeeResult(
        base_shipping_fee=base_fee,
        additional_fee=additional_fee,
        total_shipping_fee=base_fee + additional_fee,
        is_free_shipping=is_free_shipping,
        free_shipping_threshold=settings.free_shipping_threshold,
        region_info=region,
    )
    result.message = _build_message(result, order_amount)
    return result


# ---------- DB-backed helpers ----------

def get_shipping_settings():
    """Active ShippingSettings row; raises ShippingSettingsError when missing."""
    from models.shipping import ShippingSettings

    settings = ShippingSettings.query.filter_by(is_active=True).order_by(ShippingSettings.id.desc()).first()
    if not settings:
        raise ShippingSettingsError("Shipping settings are not configured.")
    return settings


def load_zipcode_table(zipcode, settings):
    """Table with the DB entry for zipcode (if any) plus the Jeju range rule."""
    from models.shipping import MountainZipcode

    table = ZipcodeTable()
    row = MountainZipcode.query.filter_by(zipcode=zipcode).first()
    if row:
        fee = row.additional_fee
        if fee is None:
            fee = settings.jeju_additional_fee if row.region_type == REGION_JEJU else settings.mountain_additional_fee
        table.add(row.zipcode, ZipcodeEntry(
            region_type=row.region_type,
            additional_fee=fee,
            region_name=row.region_name,
        ))
    jeju_fee = settings.jeju_additional_fee
    if jeju_fee is None:
        jeju_fee = DEFAULT_JEJU_ADDITIONAL_FEE
    table.add_range(*JEJU_ZIPCODE_RANGE, ZipcodeEntry(
        region_type=REGION_JEJU,
        additional_fee=jeju_fee,
        region_name='Jeju',
    ))
    return table


def calculate_shipping_fee_for_order(order_amount, zipcode) -> ShippingFeeResult:
    settings = ShippingSettingsSnapshot.from_model(get_shipping_settings())
    return calculate_shipping_fee(
        order_amount,
        zipcode,
        settings,
        load_zipcode_table(zipcode, settings),
        waive_surcharge_on_free_shipping=current_app.config.get('SHIPPING_WAIVE_SURCHARGE_ON_FREE', False),
    )


def recalculate_shipping_fee_for_validation(order_amount, zipcode) -> int:
    """Server-side shipping fee used when verifying a payment."""
    return calculate_shipping_fee_for_order(order_amount, zipcode).total_shipping_fee
