"""Registered company locations used for check-in verification."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from lms_tools.console import log
from lms_tools.supabase_client import SupabaseClient, eq


COMPANY_LOCATIONS = "company_locations"


class LocationNotFoundError(RuntimeError):
    pass


class LocationService:
    def __init__(self, client: SupabaseClient) -> None:
        self.client = client

    def list(self, company: Optional[str] = None, active_only: bool = False) -> List[dict]:
        filters: Dict[str, Any] = {}
        if company:
            filters["company"] = eq(company)
        if active_only:
            filters["is_active"] = eq(True)
        return self.client.select(
            COMPANY_LOCATIONS,
            filters=filters or None,
            order="is_main_office.desc,location_name.asc",
        )

    def consolidate(
        self,
        keep_name: str,
        company: Optional[str] = None,
        apply: bool = False,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Make ``keep_name`` the single active main office.

        Other locations are deactivated rather than deleted; row level
        security does not allow deleting them.
        """

        locations = self.list(company=company)
        keep = next((loc for loc in locations if loc.get("location_name") == keep_name), None)
        if keep is None:
            raise LocationNotFoundError(f"No location named '{keep_name}'")
        others = [loc for loc in locations if loc.get("id") != keep.get("id")]
        to_deactivate = [loc for loc in others if loc.get("is_active") or loc.get("is_main_office")]

        if apply:
            stamp = (now or datetime.now(timezone.utc)).isoformat()
            self.client.update(
                COMPANY_LOCATIONS,
                {"is_main_office": True, "is_active": True, "updated_at": stamp},
                {"id": eq(keep["id"])},
            )
            for location in to_deactivate:
                self.client.update(
                    COMPANY_LOCATIONS,
                    {"is_active": False, "is_main_office": False, "updated_at": stamp},
                    {"id": eq(location["id"])},
                )
        log(
            "locations",
            f"{'Kept' if apply else 'Would keep'} '{keep_name}' as main office, "
            f"{'deactivated' if apply else 'would deactivate'} {len(to_deactivate)} other locations",
        )
        return {"kept": keep, "deactivated": to_deactivate}
