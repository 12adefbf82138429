"""
Pharmacies domain package.

Public API:
- Pharmacy (read-only snapshot consumed by the routing engine)
- PharmacyDirectory (roster + online toggle)
"""
from .models import Pharmacy
from .directory import PharmacyDirectory, default_pharmacies

__all__ = ["Pharmacy", "PharmacyDirectory", "default_pharmacies"]
