#Purpose: Hard eligibility filtering (rule gates).
#Builds the base candidate set before ranking.
#Rules:
#online flag must be set
#never a pharmacy that already refused this order (refusals are permanent per order)
#optionally skip pharmacies that are already invited (broadcast expansion)
#Eligibility is re-read from the directory at every decision, never cached.
#Output: "rule-qualified pharmacies" (still not ranked).

from typing import Iterable, List

from pharmacies.models import Pharmacy


def build_base_candidates(
    pharmacies: Iterable[Pharmacy],
    *,
    excluded_ids: Iterable[str] = (),
) -> List[Pharmacy]:
    """
    Returns only pharmacies that are online and not excluded,
    preserving directory iteration order.
    """
    excluded = set(excluded_ids)
    eligible = []

    for pharmacy in pharmacies:
        if not pharmacy.online:
            continue

        if pharmacy.id in excluded:
            continue

        eligible.append(pharmacy)

    return eligible
