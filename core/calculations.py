# File: custody_batch_engine/core/calculations.py
"""
Volume and mass calculations for custody-transfer gauge readings.

The thermal correction is a simplified linear model
(``ctpl = V * coeff * (T - T_ref)``). Pressure (CPL) and shell (CSTL)
corrections are held at zero. This is not a full API MPMS
Chapter 11.1 implementation.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from config import settings

logger = logging.getLogger(__name__)

TEMPERATURE_MIN_C = -50.0
TEMPERATURE_MAX_C = 150.0
API_GRAVITY_MIN = 4.0
API_GRAVITY_MAX = 99.9
BSW_MIN = 0.0
BSW_MAX = 100.0


@dataclass(frozen=True)
class VolumeCorrection:
    """Result of correcting an observed volume to reference conditions."""
    ctpl: float
    cpl: float
    cstl: float
    gsv: float

    def to_dict(self) -> Dict[str, float]:
        return {"ctpl": self.ctpl, "cpl": self.cpl, "cstl": self.cstl, "gsv": self.gsv}


@dataclass(frozen=True)
class TransferQuantities:
    """Signed closing-minus-opening deltas between two gauge readings."""
    nsv: float
    mass: float
    wia: float
    average_density: float

    def magnitude(self) -> "TransferQuantities":
        return TransferQuantities(abs(self.nsv), abs(self.mass), abs(self.wia), self.average_density)

    def to_dict(self) -> Dict[str, float]:
        return {
            "nsv": self.nsv, "mass": self.mass, "wia": self.wia,
            "average_density": round(self.average_density, 3),
        }


@dataclass(frozen=True)
class Violation:
    field: str
    value: Any
    constraint: str

    def to_dict(self) -> Dict[str, Any]:
        return {"field": self.field, "value": self.value, "constraint": self.constraint}


@dataclass(frozen=True)
class DerivedVolumes:
    tov: float
    gov: float
    gsv: float
    wia: float
    nsv: float
    mass: float
    density: float


def density_from_api_gravity(api_gravity: float) -> float:
    """Density in kg/m³ from API gravity: 141.5 / (API + 131.5) * 1000."""
    return 141.5 / (api_gravity + 131.5) * 1000.0


def api_gravity_from_density(density: float) -> float:
    """API gravity from density in kg/m³. Inverse of density_from_api_gravity."""
    if density <= 0:
        raise ValueError("Density must be positive to derive API gravity.")
    return 141.5 / (density / 1000.0) - 131.5


def volume_correction(observed_volume: float, temperature: float, api_gravity: float,
                      reference_temperature: Optional[float] = None,
                      expansion_coeff: Optional[float] = None) -> VolumeCorrection:
    """
    Corrects an observed volume to the reference temperature.

    ``api_gravity`` is accepted so the signature matches a full product-table
    correction. The linear model used here does not depend on it.
    """
    ref = settings.REFERENCE_TEMPERATURE_CELSIUS if reference_temperature is None else reference_temperature
    coeff = settings.THERMAL_EXPANSION_COEFF if expansion_coeff is None else expansion_coeff
    ctpl = observed_volume * coeff * (temperature - ref)
    return VolumeCorrection(ctpl=ctpl, cpl=0.0, cstl=0.0, gsv=observed_volume - ctpl)


def water_correction(volume: float, bsw: float) -> float:
    return volume * (bsw / 100.0)


def net_standard_volume(gsv: float, wia: float) -> float:
    return gsv - wia


def mass(nsv: float, density: float) -> float:
    return nsv * density


def gross_observed_volume(tov: float, free_water: float = 0.0) -> float:
    return tov + free_water


def derive_volumes(tov: float, temperature: float, api_gravity: float, bsw: Optional[float] = None,
                   reference_temperature: Optional[float] = None) -> DerivedVolumes:
    """Runs the full TOV -> GOV -> GSV -> WIA -> NSV -> mass chain in one pass."""
    gov = gross_observed_volume(tov)
    correction = volume_correction(gov, temperature, api_gravity, reference_temperature)
    wia = water_correction(correction.gsv, bsw or 0.0)
    nsv = net_standard_volume(correction.gsv, wia)
    density = density_from_api_gravity(api_gravity)
    return DerivedVolumes(
        tov=tov, gov=gov, gsv=correction.gsv, wia=wia, nsv=nsv,
        mass=mass(nsv, density), density=density,
    )


def transfer(opening: Any, closing: Any) -> TransferQuantities:
    """
    Signed deltas (closing - opening) of already-derived NSV, mass and WIA.

    Quantities are never re-derived from raw levels here. Callers reporting a
    "transferred" amount take the magnitude.
    """
    opening_density = density_from_api_gravity(opening.api_gravity)
    closing_density = density_from_api_gravity(closing.api_gravity)
    return TransferQuantities(
        nsv=closing.nsv - opening.nsv,
        mass=closing.mass - opening.mass,
        wia=closing.wia - opening.wia,
        average_density=(opening_density + closing_density) / 2.0,
    )


def validate(level: Optional[float], temperature: Optional[float], api_gravity: Optional[float],
             bsw: Optional[float] = None) -> List[Violation]:
    """Checks gauge inputs against physical limits. An empty list means valid."""
    violations: List[Violation] = []
    if level is None or level < 0:
        violations.append(Violation("level", level, "level must be >= 0"))
    if temperature is None or not (TEMPERATURE_MIN_C <= temperature <= TEMPERATURE_MAX_C):
        violations.append(Violation(
            "temperature", temperature,
            f"temperature must be within [{TEMPERATURE_MIN_C}, {TEMPERATURE_MAX_C}] °C"))
    if api_gravity is None or not (API_GRAVITY_MIN <= api_gravity <= API_GRAVITY_MAX):
        violations.append(Violation(
            "api_gravity", api_gravity,
            f"API gravity must be within [{API_GRAVITY_MIN}, {API_GRAVITY_MAX}]"))
    if bsw is not None and not (BSW_MIN <= bsw <= BSW_MAX):
        violations.append(Violation("bsw", bsw, f"BS&W must be within [{BSW_MIN}, {BSW_MAX}] %"))
    if violations:
        logger.debug(f"Gauge input validation found {len(violations)} violation(s): {violations}")
    return violations


def validate_reading(reading: Any) -> List[Violation]:
    return validate(reading.level, reading.temperature, reading.api_gravity, reading.bsw)
