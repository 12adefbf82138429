"""
Purpose: The Pharmacy Directory collaborator.
What it does:
Holds the roster of pharmacies and their live online flag.
The routing engine only ever calls `list()`; the online toggle belongs to
admins and pharmacy terminals.
"""

from __future__ import annotations

import csv
import threading
from dataclasses import replace
from typing import Dict, Iterable, List, Optional

from .models import Pharmacy


class PharmacyDirectory:
    """
    In-process directory. Iteration order is insertion order, which is also
    the ranking tie-break.
    """

    def __init__(self, pharmacies: Iterable[Pharmacy] = ()):
        self._lock = threading.Lock()
        self._pharmacies: Dict[str, Pharmacy] = {}
        for pharmacy in pharmacies:
            self._pharmacies[pharmacy.id] = pharmacy

    def list(self) -> List[Pharmacy]:
        with self._lock:
            return list(self._pharmacies.values())

    def get(self, pharmacy_id: str) -> Optional[Pharmacy]:
        with self._lock:
            return self._pharmacies.get(pharmacy_id)

    def name_of(self, pharmacy_id: str) -> str:
        pharmacy = self.get(pharmacy_id)
        return pharmacy.name if pharmacy else pharmacy_id

    def set_online(self, pharmacy_id: str, online: bool) -> Pharmacy:
        with self._lock:
            pharmacy = self._pharmacies.get(pharmacy_id)
            if pharmacy is None:
                raise KeyError(f"Unknown pharmacy {pharmacy_id}")
            # Pharmacy is frozen, swap in a new snapshot
            pharmacy = replace(pharmacy, online=online)
            self._pharmacies[pharmacy_id] = pharmacy
            return pharmacy

    def toggle_online(self, pharmacy_id: str) -> Pharmacy:
        pharmacy = self.get(pharmacy_id)
        if pharmacy is None:
            raise KeyError(f"Unknown pharmacy {pharmacy_id}")
        return self.set_online(pharmacy_id, not pharmacy.online)

    @classmethod
    def from_csv(cls, path: str) -> PharmacyDirectory:
        """
        Expected columns: pharmacy_id, name, distance_km, online (address, rating optional).
        """
        pharmacies = []
        with open(path, "r", newline="") as file:
            reader = csv.DictReader(file)
            for row in reader:
                rating = row.get("rating")
                pharmacies.append(
                    Pharmacy.new(
                        row["pharmacy_id"],
                        row["name"],
                        float(row["distance_km"]),
                        row.get("online", "true"),
                        address=row.get("address", ""),
                        rating=float(rating) if rating else None,
                    )
                )
        return cls(pharmacies)


def default_pharmacies() -> List[Pharmacy]:
    """
    The reference roster used by demos and tests.
    """
    return [
        Pharmacy.new("ph-1", "Pharmacie de la Paix", 1.2, address="Quartier 4, Djibouti-Ville", rating=4.8),
        Pharmacy.new("ph-2", "Pharmacie Centrale", 2.5, address="Place Lagarde, Plateau", rating=4.5),
        Pharmacy.new("ph-3", "Pharmacie d'Héron", 0.8, address="Rue d'Éthiopie, Héron", rating=4.9),
    ]
