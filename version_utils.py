"""Version tag matching utilities for Docker image tags.

Derives a structural pattern from a reference tag (e.g. 'v1.2.3-ls12') and
picks the highest remote tag sharing that structure.
"""

import re
from typing import Iterable, List, Pattern, Tuple


# ---------------------------------------------------------------------------
# Internal Helper Functions
# ---------------------------------------------------------------------------

def _split_tag(tag: str) -> Tuple[bool, str, str, bool]:
    """Split a tag into (has_prefix, core, suffix, has_suffix).

    The 'v' prefix is case-insensitive. Only the first hyphen separates the
    dotted core from the suffix, so '1.2-alpine-3' has suffix 'alpine-3'.
    """
    has_prefix = tag[:1].lower() == 'v'
    remainder = tag[1:] if has_prefix else tag

    if '-' in remainder:
        core, suffix = remainder.split('-', 1)
        return has_prefix, core, suffix, True

    return has_prefix, remainder, '', False


def _to_int(value: str) -> int:
    """Parse a version component, defaulting to zero when it is not numeric."""
    try:
        return int(value)
    except ValueError:
        return 0


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def generate_pattern(reference_tag: str) -> Pattern:
    """Build an anchored, case-insensitive regex from a reference tag.

    The pattern keeps the reference's structure: same 'v' prefix presence,
    same number of dotted components and same suffix kind (numeric build
    number or exact literal text). Non-numeric core components are kept as
    literals so that every reference tag matches its own pattern.

        >>> bool(generate_pattern('v1.2').match('v1.10'))
        True
        >>> bool(generate_pattern('v1.2').match('v1.2.3'))
        False
    """
    has_prefix, core, suffix, has_suffix = _split_tag(reference_tag)

    parts = ['^']
    if has_prefix:
        parts.append('v')

    components = []
    for component in core.split('.'):
        if component.isdigit():
            components.append(r'(\d+)')
        else:
            components.append(re.escape(component))
    parts.append(r'\.'.join(components))

    if has_suffix:
        if suffix.isdigit():
            parts.append(r'-(\d+)')
        else:
            parts.append('-' + re.escape(suffix))

    parts.append('$')
    return re.compile(''.join(parts), re.IGNORECASE)


def parse_version(tag: str) -> Tuple[int, int, int, int]:
    """Parse a tag into a (major, minor, build, revision) tuple.

    Missing or unparsable components default to zero. The revision comes
    from a numeric suffix, e.g. '1.2.3-45' -> (1, 2, 3, 45).
    """
    _, core, suffix, _ = _split_tag(tag)
    numbers = core.split('.')

    major = _to_int(numbers[0]) if len(numbers) > 0 else 0
    minor = _to_int(numbers[1]) if len(numbers) > 1 else 0
    build = _to_int(numbers[2]) if len(numbers) > 2 else 0
    revision = _to_int(suffix)

    return major, minor, build, revision


def find_matching_tags(reference_tag: str, tags: Iterable[str]) -> List[str]:
    """Return the tags sharing the reference tag's structure, in input order."""
    pattern = generate_pattern(reference_tag)
    return [tag for tag in tags if pattern.match(tag)]


def find_latest_matching_version(reference_tag: str, tags: Iterable[str]) -> str:
    """Pick the highest tag structurally matching ``reference_tag``.

    Returns the reference unchanged when nothing matches, so a pinned
    version never regresses to something like 'latest'. Among equal
    versions the first one in ``tags`` wins.
    """
    matching = find_matching_tags(reference_tag, tags)

    if not matching:
        return reference_tag

    if len(matching) == 1:
        return matching[0]

    # max() keeps the first of several equal keys
    return max(matching, key=parse_version)
