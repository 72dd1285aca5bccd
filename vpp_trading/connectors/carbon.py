"""Carbon accounting API client (optional collaborator for performance reports)."""

from __future__ import annotations

import logging
from datetime import date

import httpx

from vpp_trading.config import settings

logger = logging.getLogger(__name__)


class CarbonAccountingClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.carbon_api_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.carbon_api_key
        self.timeout = timeout

    def carbon_reduction(
        self,
        vpp_id: int,
        start: date,
        end: date,
        energy_mwh: float,
    ) -> float | None:
        """Tonnes of CO2 avoided by the dispatched energy. None when unavailable."""
        if not self.base_url:
            logger.warning("Carbon API not configured, skipping carbon reduction")
            return None

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            resp = httpx.get(
                f"{self.base_url}/reduction",
                params={
                    "vpp_id": vpp_id,
                    "start": start.isoformat(),
                    "end": end.isoformat(),
                    "energy_mwh": energy_mwh,
                },
                headers=headers,
                timeout=self.timeout,
            )
            resp.raise_for_status()
            return float(resp.json()["carbon_reduction_t"])
        except httpx.TimeoutException:
            logger.warning("Carbon API request timed out (vpp=%d)", vpp_id)
            return None
        except httpx.HTTPError:
            logger.exception("Carbon API request failed (vpp=%d)", vpp_id)
            return None
        except (KeyError, TypeError, ValueError):
            logger.warning("Carbon API returned an unexpected payload (vpp=%d)", vpp_id)
            return None
