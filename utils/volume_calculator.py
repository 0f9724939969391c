# File: custody_batch_engine/utils/volume_calculator.py

import math
import logging
from typing import Dict, Optional
import numpy as np

from core.errors import ValidationFailed

logger = logging.getLogger(__name__)


class VolumeCalculator:
    """
    Converts a measured level into Total Observed Volume (TOV) in cubic metres.

    A calibrated strapping table is used when the tank has one. Otherwise the
    tank is treated as an ideal vertical cylinder, which is a provisional
    approximation until the tank is strapped.
    """

    def calculate_tov_from_strapping(self, level_mm: float, strapping_data: Dict[int, float]) -> float:
        """
        Interpolates the strapping table (level mm -> litres) and returns m³.
        Levels outside the table are clamped to its first or last entry.
        """
        levels = np.array(sorted(strapping_data.keys()), dtype=float)
        volumes = np.array([strapping_data[int(lvl)] for lvl in levels], dtype=float)
        litres = float(np.interp(level_mm, levels, volumes))
        return litres / 1000.0

    def calculate_tov_from_geometry(self, level_mm: float, diameter_m: float) -> float:
        radius = diameter_m / 2.0
        return math.pi * radius * radius * (level_mm / 1000.0)

    def calculate_tov(self, tank_id: str, level_mm: float, diameter_m: Optional[float] = None,
                      strapping_data: Optional[Dict[int, float]] = None) -> float:
        if strapping_data:
            return self.calculate_tov_from_strapping(level_mm, strapping_data)
        if diameter_m and diameter_m > 0:
            logger.debug(f"No strapping table for {tank_id}; using cylinder geometry (diameter {diameter_m} m).")
            return self.calculate_tov_from_geometry(level_mm, diameter_m)
        raise ValidationFailed(
            f"Tank {tank_id} has neither a strapping table nor a diameter; cannot compute TOV.",
            tank_id=tank_id,
        )
