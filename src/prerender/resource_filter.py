# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Sub-resource allow/block decision for render-time request interception.

Only the HTML matters for a snapshot, so anything that cannot change the
document text is aborted before it reaches the network:
- declared type in ``BLOCKED_RESOURCE_TYPES`` (images, fonts, media, ...)
- URL (query/fragment stripped) containing a tracker/ad vendor substring,
  whatever its declared type

Pure functions, no state.  Unknown resource types are allowed (fail-open).
"""

from __future__ import annotations

from enum import StrEnum

from . import strip_query


class ResourceDecision(StrEnum):
    ALLOW = "allow"
    BLOCK = "block"


# Playwright ``request.resource_type`` values.  "csp_report" and "css" are
# the puppeteer spellings, kept so both engines' names match.
BLOCKED_RESOURCE_TYPES = frozenset(
    {
        "stylesheet",
        "css",
        "image",
        "media",
        "font",
        "texttrack",
        "object",
        "beacon",
        "cspreport",
        "csp_report",
        "imageset",
    }
)

SKIPPED_RESOURCES: tuple[str, ...] = (
    "quantserve",
    "adzerk",
    "doubleclick",
    "adition",
    "exelator",
    "sharethrough",
    "cdn.api.twitter",
    "google-analytics",
    "googletagmanager",
    "google",
    "fontawesome",
    "facebook",
    "analytics",
    "optimizely",
    "clicktale",
    "mixpanel",
    "zedo",
    "clicksor",
    "tiqcdn",
    "adtelligent",
)


def is_tracker_url(url: str) -> bool:
    """True if *url* (without query/fragment) contains a known tracker/ad substring."""
    bare = strip_query(url)
    return any(vendor in bare for vendor in SKIPPED_RESOURCES)


def decide(resource_type: str, resource_url: str) -> ResourceDecision:
    """Allow or block one sub-resource request."""
    if resource_type in BLOCKED_RESOURCE_TYPES:
        return ResourceDecision.BLOCK
    if is_tracker_url(resource_url):
        return ResourceDecision.BLOCK
    return ResourceDecision.ALLOW
