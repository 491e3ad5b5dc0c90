"""
Insurer portal adapters and the payer-code routing table.

Supporting a new payer code means registering a route here; the submitter
and reconciliation engine only ever call ``resolve_route``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Type

from ..utils.error_handler import UnsupportedRouteError
from ..utils.normalize import normalize_pay_type
from .allianz import AllianzAdapter
from .base import TargetAdapter
from .mhc import MHCFamilyAdapter


@dataclass(frozen=True)
class PortalRoute:
    code: str
    adapter_class: Type[TargetAdapter]
    name: str

    @property
    def family(self) -> str:
        return self.adapter_class.family


PORTAL_ROUTES: Dict[str, PortalRoute] = {
    "MHC": PortalRoute("MHC", MHCFamilyAdapter, "MHC Asia"),
    "AIA": PortalRoute("AIA", MHCFamilyAdapter, "MHC Asia (AIA)"),
    "AIACLIENT": PortalRoute("AIACLIENT", MHCFamilyAdapter, "MHC Asia (AIA Clinic)"),
    "ALLIANZ": PortalRoute("ALLIANZ", AllianzAdapter, "Allianz Medinet"),
    "ALLIMED": PortalRoute("ALLIMED", AllianzAdapter, "Alliance Medinet"),
}

# Payer codes seen at the clinic with no portal automation yet
UNSUPPORTED_CODES = ("IHP", "GE", "FULLERT", "ALL")


def resolve_route(code: Optional[str]) -> Optional[PortalRoute]:
    """Route for a payer code, or None when the code has no adapter."""
    key = normalize_pay_type(code)
    if not key or key in UNSUPPORTED_CODES:
        return None
    return PORTAL_ROUTES.get(key)


def require_route(code: Optional[str]) -> PortalRoute:
    route = resolve_route(code)
    if route is None:
        raise UnsupportedRouteError(normalize_pay_type(code))
    return route


def register_route(code: str, adapter_class: Type[TargetAdapter], name: Optional[str] = None) -> PortalRoute:
    key = normalize_pay_type(code)
    if not key:
        raise ValueError("payer code is required")
    route = PortalRoute(key, adapter_class, name or key)
    PORTAL_ROUTES[key] = route
    return route


def not_implemented_result(code: Optional[str]) -> dict:
    return {"success": False, "reason": "not_implemented", "portal": code}
