"""Permutation generator — slot candidate lists to slot-assignment combinations.

Pure functions, no storage or renderer access.
"""

from collections.abc import Collection

# Sentinel: vary every unlocked slot
ALL_UNLOCKED = "all-unlocked"


def varying_slots(slots: list[dict], vary_slot_ids: Collection[str] | str) -> list[dict]:
    """Return the slots that take part in the Cartesian expansion, in slot order.

    Locked slots never vary, even when named explicitly.
    """
    if vary_slot_ids == ALL_UNLOCKED:
        return [s for s in slots if not s.get("locked")]
    wanted = set(vary_slot_ids)
    return [s for s in slots if s["id"] in wanted and not s.get("locked")]


def generate_permutations(
    slots: list[dict],
    vary_slot_ids: Collection[str] | str,
    max_combinations: int,
) -> list[dict[str, str]]:
    """Enumerate slot assignments, first candidate first, left to right.

    Every slot outside the varying set resolves to its first candidate.
    Varying slots are crossed in slot order, stopping as soon as
    ``max_combinations`` assignments exist. Slots without candidates are
    skipped and contribute no key.

    Raises ValueError if max_combinations < 1.
    """
    if max_combinations < 1:
        raise ValueError(f"max_combinations must be >= 1, got {max_combinations}")

    to_vary = varying_slots(slots, vary_slot_ids)
    vary_ids = {s["id"] for s in to_vary}

    base: dict[str, str] = {}
    for slot in slots:
        if slot["id"] not in vary_ids and slot.get("assets"):
            base[slot["id"]] = slot["assets"][0]

    combinations = [base]
    for index, slot in enumerate(to_vary):
        candidates = slot.get("assets") or []
        if not candidates:
            continue

        expanded = []
        for combination in combinations:
            for asset_id in candidates:
                expanded.append({**combination, slot["id"]: asset_id})
                if len(expanded) >= max_combinations:
                    return _fill_first_candidates(expanded, to_vary[index + 1:])
        combinations = expanded

    return combinations[:max_combinations]


def _fill_first_candidates(combinations: list[dict], remaining: list[dict]) -> list[dict]:
    """Pin varying slots the expansion never reached to their first candidate.

    Keeps short-circuited assignments covering every slot.
    """
    fill = {s["id"]: s["assets"][0] for s in remaining if s.get("assets")}
    if not fill:
        return combinations
    return [{**combination, **fill} for combination in combinations]
