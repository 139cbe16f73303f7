"""SSID matching for the AGO access point.

Devices and OS tools report network names with stray quotes, different
casing, or vendor suffixes (``"AGO-5G"``, ``AGO_1234``). The matcher is
therefore deliberately loose: after normalisation, equality or containment
in either direction counts as a match.

Known weakness: containment in both directions means an unrelated network
that shares a short common substring with the target (e.g. target ``AGO``
and a network called ``Chicago Guest``) is reported as a match.
"""

from __future__ import annotations

from typing import Any


def normalize_ssid(value: Any) -> str:
    """Strip surrounding quotes and whitespace and lowercase *value*."""
    if not isinstance(value, str):
        return ""
    return value.strip().strip('"').strip().lower()


def matches(current: Any, target: Any) -> bool:
    """Return ``True`` when *current* denotes the *target* access point.

    An empty name on either side never matches, so an unknown current
    network is never mistaken for the AGO.
    """
    current_norm = normalize_ssid(current)
    target_norm = normalize_ssid(target)
    if not current_norm or not target_norm:
        return False
    return current_norm == target_norm or target_norm in current_norm or current_norm in target_norm
