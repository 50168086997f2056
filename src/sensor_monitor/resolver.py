"""Attach the configured device identity to readings."""

from __future__ import annotations

from sensor_monitor.config import TagPolicy
from sensor_monitor.exceptions import UnknownTagError
from sensor_monitor.models import DeviceIdentity


def resolve(tag: str, configured: DeviceIdentity, policy: TagPolicy) -> DeviceIdentity:
    """Return the identity readings tagged *tag* belong to.

    One process serves one device, so this validates *tag* against the policy
    and hands back *configured* unchanged.
    """
    if policy.strict and tag not in policy.accepted_tags:
        accepted = ", ".join(sorted(policy.accepted_tags))
        raise UnknownTagError(
            f"Sensor tag {tag!r} is not accepted for device {configured.name!r} (accepted: {accepted})",
            sensor_tag=tag,
        )
    return configured
