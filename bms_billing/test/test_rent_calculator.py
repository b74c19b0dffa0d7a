from decimal import Decimal

import pytest

from bms_billing.core.exceptions import ValidationError
from bms_billing.models.rent import FloorOverride, RentPolicy, RentSource, UnitAttributes
from bms_billing.services.rent_calculator import calculate_rent, resolve_rent


def policy(**overrides) -> RentPolicy:
    data = {"base_rate_per_sqm": Decimal("500"), "decrement_per_floor": Decimal("10")}
    data.update(overrides)
    return RentPolicy(**data)


class TestBuildingFormula:
    def test_floor_decrement(self):
        quote = calculate_rent(policy(), UnitAttributes(floor=3, area=Decimal("40")))
        assert quote.applied_rate == Decimal("480")
        assert quote.total == Decimal("19200")
        assert quote.source == RentSource.BUILDING_POLICY

    @pytest.mark.parametrize("floor", [0, 1])
    def test_ground_multiplier_applies_on_ground_floors(self, floor):
        quote = calculate_rent(
            policy(ground_floor_multiplier=Decimal("1.2")), UnitAttributes(floor=floor, area=Decimal("40"))
        )
        assert quote.applied_rate == Decimal("600")
        assert quote.total == Decimal("24000")

    def test_ground_multiplier_ignored_above_first_floor(self):
        quote = calculate_rent(
            policy(ground_floor_multiplier=Decimal("1.2")), UnitAttributes(floor=2, area=Decimal("40"))
        )
        assert quote.applied_rate == Decimal("490")

    def test_min_rate_floor(self):
        quote = calculate_rent(
            policy(decrement_per_floor=Decimal("100"), min_rate_per_sqm=Decimal("300")),
            UnitAttributes(floor=5, area=Decimal("40")),
        )
        assert quote.applied_rate == Decimal("300")
        assert quote.total == Decimal("12000")

    def test_missing_floor_is_ground(self):
        quote = calculate_rent(policy(ground_floor_multiplier=Decimal("1.1")), UnitAttributes(area=Decimal("10")))
        assert quote.total == Decimal("5500")

    def test_total_rounded_to_whole_units(self):
        quote = calculate_rent(policy(), UnitAttributes(floor=3, area=Decimal("33.33")))
        # 480 * 33.33 = 15998.4
        assert quote.total == Decimal("15998")


class TestPrecedence:
    def test_flat_override_wins(self):
        unit = UnitAttributes(floor=3, area=Decimal("40"), flat_rent_override=Decimal("12000"),
                              rate_per_sqm_override=Decimal("450"))
        quote = calculate_rent(policy(floor_overrides=[FloorOverride(floor=3, rate_per_sqm=Decimal("470"))]), unit)
        assert quote.source == RentSource.MANUAL
        assert quote.total == Decimal("12000")
        assert quote.applied_rate == Decimal("300")

    def test_flat_override_without_area_or_policy(self):
        quote = calculate_rent(None, UnitAttributes(flat_rent_override=Decimal("9999.6")))
        assert quote.total == Decimal("10000")
        assert quote.applied_rate is None

    def test_unit_rate_override_beats_floor_override(self):
        unit = UnitAttributes(floor=3, area=Decimal("40"), rate_per_sqm_override=Decimal("450"))
        quote = calculate_rent(policy(floor_overrides=[FloorOverride(floor=3, rate_per_sqm=Decimal("470"))]), unit)
        assert quote.source == RentSource.UNIT_OVERRIDE
        assert quote.total == Decimal("18000")

    def test_unit_rate_override_needs_no_policy(self):
        quote = calculate_rent(None, UnitAttributes(area=Decimal("10.01"), rate_per_sqm_override=Decimal("455.55")))
        assert quote.total == Decimal("4560")

    def test_floor_override_beats_formula(self):
        quote = calculate_rent(
            policy(floor_overrides=[FloorOverride(floor=3, rate_per_sqm=Decimal("470"))]),
            UnitAttributes(floor=3, area=Decimal("40")),
        )
        assert quote.source == RentSource.FLOOR_OVERRIDE
        assert quote.total == Decimal("18800")

    def test_floor_override_for_other_floor_is_ignored(self):
        quote = calculate_rent(
            policy(floor_overrides=[FloorOverride(floor=7, rate_per_sqm=Decimal("100"))]),
            UnitAttributes(floor=3, area=Decimal("40")),
        )
        assert quote.source == RentSource.BUILDING_POLICY


class TestUnpriceable:
    def test_missing_area(self):
        with pytest.raises(ValidationError):
            calculate_rent(policy(), UnitAttributes(floor=3))

    def test_no_policy_and_no_override(self):
        with pytest.raises(ValidationError):
            calculate_rent(None, UnitAttributes(floor=3, area=Decimal("40")))

    def test_resolve_rent_returns_none(self):
        assert resolve_rent(None, UnitAttributes(floor=3, area=Decimal("40"))) is None
        assert resolve_rent(policy(), UnitAttributes(floor=3, area=Decimal("40"))).total == Decimal("19200")


@pytest.mark.parametrize("decrement", ["0", "5", "12.5", "40"])
@pytest.mark.parametrize("area", ["1", "25.5", "40", "120.75"])
class TestFormulaSweep:
    def test_total_matches_formula_and_respects_min_rate(self, decrement, area):
        p = policy(decrement_per_floor=Decimal(decrement), min_rate_per_sqm=Decimal("250"))
        for floor in range(2, 21):
            quote = calculate_rent(p, UnitAttributes(floor=floor, area=Decimal(area)))
            expected_rate = max(Decimal("250"), Decimal("500") - Decimal(decrement) * (floor - 1))
            assert quote.applied_rate == expected_rate
            assert quote.total == (expected_rate * Decimal(area)).quantize(Decimal("1"), rounding="ROUND_HALF_UP")
            assert quote.applied_rate >= p.min_rate_per_sqm

    def test_rent_never_increases_with_floor(self, decrement, area):
        p = policy(decrement_per_floor=Decimal(decrement))
        totals = [calculate_rent(p, UnitAttributes(floor=f, area=Decimal(area))).total for f in range(2, 21)]
        assert totals == sorted(totals, reverse=True)
