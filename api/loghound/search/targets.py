from __future__ import annotations
import re
from typing import Iterable, List, Optional

from .errors import InvalidTargetSpec
from .types import Target

# e.g. us-east-1, ap-southeast-2, us-gov-west-1
REGION_PATTERN = re.compile(r"^[a-z]{2}(?:-[a-z0-9]+)+-\d+$")

MAX_SOURCE_NAME_LENGTH = 512
_WHITESPACE = re.compile(r"\s")


def is_region(value: str) -> bool:
    """Check whether a string looks like a region identifier."""
    return bool(REGION_PATTERN.match(value))


def parse_target(spec: str, default_region: Optional[str]) -> Target:
    """Parse ``source_name`` or ``region:source_name`` into a Target.

    Only the first ``:`` is considered. When the left side is not a valid
    region the whole string is the source name, so ``my-app:production``
    stays a single log group name under the default region.
    """
    if spec is None or not spec.strip():
        raise InvalidTargetSpec(spec or "", "target specification is empty")

    text = spec.strip()
    region: Optional[str] = None
    source_name = text

    head, sep, tail = text.partition(":")
    if sep and is_region(head):
        region = head
        source_name = tail.strip()
        if not source_name:
            raise InvalidTargetSpec(spec, "log group name is missing after the region")
    else:
        region = default_region

    if not region:
        raise InvalidTargetSpec(spec, "no region given and no default region configured")
    if not is_region(region):
        raise InvalidTargetSpec(spec, f"'{region}' is not a valid region")
    if len(source_name) > MAX_SOURCE_NAME_LENGTH:
        raise InvalidTargetSpec(spec, f"log group name exceeds {MAX_SOURCE_NAME_LENGTH} characters")
    if _WHITESPACE.search(source_name):
        raise InvalidTargetSpec(spec, "log group name must not contain whitespace")

    return Target(region=region, source_name=source_name)


def resolve_targets(specs: Iterable[str], default_region: Optional[str]) -> List[Target]:
    """Expand target specifications into unique targets, first-seen order."""
    targets: List[Target] = []
    seen = set()
    for spec in specs:
        target = parse_target(spec, default_region)
        if target in seen:
            continue
        seen.add(target)
        targets.append(target)
    return targets
