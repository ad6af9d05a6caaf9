from typing import Callable, Iterable

from .permissions import P_DATA_ACCESS, V_BLOCK, V_UNRESTRICTED, get_permission_type

__all__ = [
    "CoalesceStrategy",
    "COALESCE_STRATEGIES",
    "coalesce",
    "coalesce_most_restrictive",
    "most_restrictive_per_group",
]


# A coalescing strategy receives the type's lattice (most -> least permissive) and the de-duplicated set of observed
# values, and returns the single effective value, or None if nothing was observed.
CoalesceStrategy = Callable[[tuple[str, ...], frozenset[str]], str | None]


def _first_present(ordered_values: Iterable[str], perm_values: frozenset[str]) -> str | None:
    return next((v for v in ordered_values if v in perm_values), None)


def _coalesce_default(ordered_values: tuple[str, ...], perm_values: frozenset[str]) -> str | None:
    # Most permissive value held in any group wins
    return _first_present(ordered_values, perm_values)


def _coalesce_data_access(ordered_values: tuple[str, ...], perm_values: frozenset[str]) -> str | None:
    # Block in one group overrides no-self-service in another, but not unrestricted
    if V_BLOCK in perm_values and V_UNRESTRICTED not in perm_values:
        return V_BLOCK
    return _first_present(ordered_values, perm_values)


COALESCE_STRATEGIES: dict[str, CoalesceStrategy] = {
    P_DATA_ACCESS: _coalesce_data_access,
}


def _observed(perm_values: Iterable[str | None]) -> frozenset[str]:
    # Missing values (e.g. an absent overlay entry) never drag the result down
    return frozenset(v for v in perm_values if v is not None)


def coalesce(perm_type: str, perm_values: Iterable[str | None]) -> str | None:
    """
    Coalesce a set of permission values into a single value. This determines the permission to enforce for a user in
    multiple groups with conflicting permissions. By default, this returns the *most* permissive value present; types
    may register a different strategy in COALESCE_STRATEGIES.
    :param perm_type: The permission type the values belong to.
    :param perm_values: Observed values; None entries are ignored.
    :return: The effective value, or None if no values were observed (callers fall back to the least permissive value).
    """
    ordered_values = get_permission_type(perm_type).values
    return COALESCE_STRATEGIES.get(perm_type, _coalesce_default)(ordered_values, _observed(perm_values))


def coalesce_most_restrictive(perm_type: str, perm_values: Iterable[str | None]) -> str | None:
    """
    Coalesce a set of permission values using the *least* permissive value present. Used to compute a conservative
    per-group aggregate (e.g. the worst table a group can see) before combining groups with coalesce().
    """
    return _first_present(reversed(get_permission_type(perm_type).values), _observed(perm_values))


def most_restrictive_per_group(perm_type: str, group_values: Iterable[tuple[int, str]]) -> frozenset[str]:
    """
    Given (group ID, value) pairs, return the set containing the most restrictive value held by each group.
    """
    by_group: dict[int, set[str]] = {}
    for group_id, value in group_values:
        by_group.setdefault(group_id, set()).add(value)
    return frozenset(coalesce_most_restrictive(perm_type, vs) for vs in by_group.values())
