"""Cost calculation from the engines a job actually used."""

from decimal import Decimal, ROUND_CEILING
from typing import Dict, Iterable, Optional
import structlog

logger = structlog.get_logger()


class CostCalculator:
    """Prices engine usage in cents."""

    # Video face replacement, cents per output second by resolution
    WAN_REPLACE_PER_SECOND = {
        "480p": Decimal("4"),
        "580p": Decimal("6"),
        "720p": Decimal("8"),
    }

    # Flat or per-unit prices, cents
    ENGINE_PRICING = {
        "kling_motion": Decimal("40"),      # per video
        "face_swap": Decimal("0.5"),        # per frame
        "vision_analysis": Decimal("1"),    # per image
        "gemini_image": Decimal("2"),       # per image
        "fal_image": Decimal("4"),          # per image
        "local_image": Decimal("0"),
        "passthrough": Decimal("0"),
        "lora_training": Decimal("200"),    # per training run
        "flux_lora": Decimal("3"),          # per image
        "flux_pulid": Decimal("4"),         # per image
    }

    def get_wan_replace_price(self, resolution: str = "720p") -> Decimal:
        """Get cents per second for video face replacement."""
        price = self.WAN_REPLACE_PER_SECOND.get(resolution)
        if price is None:
            logger.warning("Unknown resolution for wan_replace, using 720p", resolution=resolution)
            return self.WAN_REPLACE_PER_SECOND["720p"]
        return price

    def engine_cost(
        self,
        engine: str,
        units: int = 1,
        resolution: Optional[str] = None,
        duration_seconds: Optional[float] = None,
    ) -> Decimal:
        """
        Cost in (fractional) cents of one engine's usage.

        Args:
            engine: Engine name
            units: Calls or items processed (frames, images)
            resolution: Output resolution, for per-second video engines
            duration_seconds: Output duration, for per-second video engines

        Returns:
            Cost in cents as Decimal
        """
        if engine == "wan_replace":
            seconds = Decimal(str(5 if duration_seconds is None else duration_seconds))
            return self.get_wan_replace_price(resolution or "720p") * seconds * units

        price = self.ENGINE_PRICING.get(engine)
        if price is None:
            logger.warning("Unknown engine for pricing, assuming free", engine=engine)
            return Decimal("0")
        return price * units

    def total_cents(self, usage: Iterable[Dict]) -> int:
        """
        Sum usage records and round up to whole cents.

        Each record is a dict with "engine" and optionally "units",
        "resolution" and "duration_seconds".
        """
        total = Decimal("0")
        for item in usage:
            total += self.engine_cost(
                item["engine"],
                units=item.get("units", 1),
                resolution=item.get("resolution"),
                duration_seconds=item.get("duration_seconds"),
            )
        return int(total.to_integral_value(rounding=ROUND_CEILING))


# Singleton instance for convenience
cost_calculator = CostCalculator()
