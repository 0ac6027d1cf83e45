"""
Commission schedule.

The schedule is chosen explicitly through `REFERRAL_COMMISSION_SCHEDULE`,
either as a preset name or as a JSON list of levels:

    [{"level": 1, "percentage": "5.00", "monthly_cap_minor_units": null}, ...]
"""
import json
import os
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from referral_engine.exceptions import InvalidConfigurationException

REFERRAL_COMMISSION_SCHEDULE = os.getenv("REFERRAL_COMMISSION_SCHEDULE")
REFERRAL_MIN_REVENUE_MINOR_UNITS = int(
    os.getenv("REFERRAL_MIN_REVENUE_MINOR_UNITS", "1"))

PRESET_THREE_LEVEL_UNCAPPED = "three_level_uncapped"
PRESET_FOUR_LEVEL_CAPPED = "four_level_capped"

# matches referral_earnings.percentage numeric(7, 4)
MAX_PERCENTAGE_DECIMAL_PLACES = 4


class CommissionLevel:

    def __init__(self,
                 level: int,
                 percentage: Decimal,
                 monthly_cap_minor_units: Optional[int] = None):
        self.level = level
        self.percentage = percentage
        self.monthly_cap_minor_units = monthly_cap_minor_units

    @property
    def is_capped(self) -> bool:
        return self.monthly_cap_minor_units is not None

    def __eq__(self, other):
        return isinstance(other, CommissionLevel) and (
            self.level, self.percentage, self.monthly_cap_minor_units) == (
                other.level, other.percentage, other.monthly_cap_minor_units)

    def __repr__(self):
        return (f"CommissionLevel({self.level}, {self.percentage}, "
                f"{self.monthly_cap_minor_units})")


class CommissionSchedule:

    def __init__(self, levels: List[CommissionLevel], name: str = "custom"):
        self.levels = sorted(levels, key=lambda i: i.level)
        self.name = name
        self.validate()

    @property
    def depth(self) -> int:
        return max((i.level for i in self.levels), default=0)

    def get_level(self, level: int) -> Optional[CommissionLevel]:
        for commission_level in self.levels:
            if commission_level.level == level:
                return commission_level
        return None

    def validate(self):
        if not self.levels:
            raise InvalidConfigurationException(
                "Commission schedule has no levels.")

        levels = [i.level for i in self.levels]
        if levels != list(range(1, len(levels) + 1)):
            raise InvalidConfigurationException(
                f"Commission levels must be consecutive starting at 1, got {levels}."
            )

        for commission_level in self.levels:
            percentage = commission_level.percentage
            if not isinstance(percentage, Decimal) or not percentage.is_finite():
                raise InvalidConfigurationException(
                    f"Level {commission_level.level} percentage is not a number: "
                    f"{percentage}.")
            if percentage.normalize().as_tuple().exponent < -MAX_PERCENTAGE_DECIMAL_PLACES:
                raise InvalidConfigurationException(
                    f"Level {commission_level.level} percentage has more than "
                    f"{MAX_PERCENTAGE_DECIMAL_PLACES} decimal places: {percentage}.")
            if percentage < 0 or percentage > 100:
                raise InvalidConfigurationException(
                    f"Level {commission_level.level} percentage out of range: "
                    f"{percentage}.")
            if commission_level.is_capped and commission_level.monthly_cap_minor_units < 0:
                raise InvalidConfigurationException(
                    f"Level {commission_level.level} cap must not be negative."
                )

        total = sum(i.percentage for i in self.levels)
        if total > 100:
            raise InvalidConfigurationException(
                f"Commission percentages add up to {total}%, more than the revenue."
            )

    @classmethod
    def preset(cls, name: str) -> "CommissionSchedule":
        if name == PRESET_THREE_LEVEL_UNCAPPED:
            return cls([
                CommissionLevel(1, Decimal("5.00")),
                CommissionLevel(2, Decimal("3.00")),
                CommissionLevel(3, Decimal("2.00")),
            ], name)
        if name == PRESET_FOUR_LEVEL_CAPPED:
            return cls([
                CommissionLevel(1, Decimal("4.00"), 1_000_000),
                CommissionLevel(2, Decimal("3.00"), 500_000),
                CommissionLevel(3, Decimal("2.00"), 250_000),
                CommissionLevel(4, Decimal("1.00"), 100_000),
            ], name)

        raise InvalidConfigurationException(
            f"Unknown commission schedule preset {name}.")

    @classmethod
    def from_json(cls, value: str) -> "CommissionSchedule":
        try:
            data = json.loads(value)
        except ValueError as e:
            raise InvalidConfigurationException(
                f"Commission schedule is not valid JSON: {e}") from e

        if not isinstance(data, list):
            raise InvalidConfigurationException(
                "Commission schedule must be a list of levels.")

        levels = []
        try:
            for item in data:
                cap = item.get("monthly_cap_minor_units")
                levels.append(
                    CommissionLevel(int(item["level"]),
                                    Decimal(str(item["percentage"])),
                                    int(cap) if cap is not None else None))
        except (KeyError, TypeError, ValueError, AttributeError,
                InvalidOperation) as e:
            raise InvalidConfigurationException(
                f"Invalid commission level definition: {e}") from e

        return cls(levels)

    @classmethod
    def from_env(cls, value: str = None) -> "CommissionSchedule":
        value = value if value is not None else REFERRAL_COMMISSION_SCHEDULE
        if not value or not value.strip():
            raise InvalidConfigurationException(
                "REFERRAL_COMMISSION_SCHEDULE is not set.")

        value = value.strip()
        if value.startswith("["):
            return cls.from_json(value)
        return cls.preset(value)
