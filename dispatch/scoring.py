#Purpose: Ranking model (the "who is asked first" layer).
#Takes candidates (already eligible) and orders them by distance, nearest first.
#Tie-break: directory iteration order. sorted() is stable so this is deterministic.
#Output: ranked pharmacies for the offer sequence.

from typing import Iterable, List

from pharmacies.models import Pharmacy


def rank_candidates(candidates: Iterable[Pharmacy]) -> List[Pharmacy]:
    return sorted(candidates, key=lambda pharmacy: pharmacy.distance)
