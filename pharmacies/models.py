"""
Purpose: Core data models for the pharmacies domain.
What it does:
Defines the structure of a Pharmacy as the routing engine sees it:
an identity, a live online flag and a precomputed distance used as the ranking key.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Pharmacy:
    """
    A purely stateless snapshot of a pharmacy at a specific point in time.
    """
    id: str
    name: str
    distance: float  # km from the patient, lower is preferred
    online: bool = True

    address: str = ""
    rating: float | None = None

    @classmethod
    def new(
        cls,
        pharmacy_id: str,
        name: str,
        distance: float,
        online: bool | str = True,
        address: str = "",
        rating: float | None = None,
    ) -> Pharmacy:
        if isinstance(online, str):
            online = online.strip().lower() in ("1", "true", "yes", "online")

        distance = float(distance)
        if distance < 0:
            raise ValueError(f"Pharmacy {pharmacy_id} has a negative distance: {distance}")

        return cls(
            id=pharmacy_id,
            name=name,
            distance=distance,
            online=online,
            address=address,
            rating=rating,
        )
