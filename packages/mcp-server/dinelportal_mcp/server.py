"""
DinElportal MCP Server - Main entry point.

Partner support tools for the tracking integration:
- Click id and conversion pattern checks
- Device fingerprints from reported browser signals
- Embed snippets and test conversions
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from urllib.parse import urlencode, urlparse

from fastmcp import FastMCP

logger = logging.getLogger(__name__)

# Initialize server
mcp = FastMCP("DinElportal Partner Tracking")


# =============================================================================
# Diagnostic Tools
# =============================================================================


@mcp.tool()
def extract_click_id(
    url: str,
    param: str = "click_id",
    required_prefix: str | None = None,
) -> dict:
    """
    Extract the click id and partner id a landing URL carries.

    Args:
        url: Full landing page URL
        param: Query parameter holding the click id (default "click_id")
        required_prefix: Reject click ids without this prefix (e.g. "dep_")

    Returns:
        Whether a usable click id was found, and its value
    """
    from dinelportal.tracking import extract_click_id as _extract_click_id
    from dinelportal.tracking import extract_partner_id

    click_id = _extract_click_id(url, param=param, required_prefix=required_prefix)
    return {
        "url": url,
        "found": click_id is not None,
        "click_id": click_id,
        "partner_id": extract_partner_id(url),
    }


@mcp.tool()
def match_conversion_path(
    path: str,
    patterns: list[str] | None = None,
) -> dict:
    """
    Check whether a page would be detected as a conversion page.

    Patterns are exact paths or globs: * matches within one path segment,
    ** across segments, ? one character. Matching is case-insensitive.

    Args:
        path: URL path, or a full URL
        patterns: Conversion patterns (default: the standard partner set)

    Returns:
        The first matching pattern, if any
    """
    from dinelportal.tracking import DEFAULT_CONVERSION_PATTERNS, match_first

    if patterns is None:
        patterns = list(DEFAULT_CONVERSION_PATTERNS)
    if "://" in path:
        path = urlparse(path).path or "/"

    try:
        matched = match_first(path, patterns)
    except ValueError as e:
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "path": path,
        "matched": matched is not None,
        "matched_pattern": matched,
        "patterns": patterns,
    }


@mcp.tool()
def compute_device_fingerprint(
    signals: dict,
    include: list[str] | None = None,
) -> dict:
    """
    Compute the fallback device fingerprint for reported browser signals.

    Args:
        signals: Browser signals, e.g. {"screen_width": 1920, "language": "da-DK",
            "timezone_offset": -60, "user_agent": "..."}
        include: Signal groups to use (screen, viewport, timezone, language,
            platform, cookies, user_agent). Defaults to all.

    Returns:
        The fingerprint and the signal groups that contributed to it
    """
    from dinelportal.tracking import DeviceSignals, compute_fingerprint
    from dinelportal.tracking.config import DEFAULT_FINGERPRINT_SIGNALS

    try:
        device = DeviceSignals(**signals)
    except TypeError as e:
        return {"success": False, "error": f"Invalid signals: {e}"}

    try:
        fingerprint = compute_fingerprint(
            device,
            include=include if include is not None else DEFAULT_FINGERPRINT_SIGNALS,
        )
    except ValueError as e:
        return {"success": False, "error": str(e)}

    return {
        "success": True,
        "fingerprint": fingerprint.value,
        "signals_used": list(fingerprint.signals),
        "provisional": fingerprint.provisional,
    }


# =============================================================================
# Integration Tools
# =============================================================================


@mcp.tool()
def build_embed_snippet(
    partner_id: str,
    script_url: str | None = None,
    debug: bool = False,
) -> dict:
    """
    Generate the script tag a partner adds to their site.

    Args:
        partner_id: Partner identifier (3-50 characters: letters, digits, - and _)
        script_url: Tracking script URL (default: the hosted universal script)
        debug: Add debug=1 so the script logs to the console

    Returns:
        The embed snippet
    """
    from dinelportal.tracking import is_valid_partner_id
    from dinelportal.tracking.config import DEFAULT_SCRIPT_URL

    if not is_valid_partner_id(partner_id):
        return {"success": False, "error": f"Invalid partner_id: {partner_id!r}"}

    params = {"partner_id": partner_id}
    if debug:
        params["debug"] = "1"
    src = f"{script_url or DEFAULT_SCRIPT_URL}?{urlencode(params)}"

    return {
        "success": True,
        "partner_id": partner_id,
        "script_url": src,
        "snippet": f'<script async src="{src}"></script>',
    }


@mcp.tool()
def send_test_conversion(
    partner_id: str,
    click_id: str = "dep_test",
    partner_domain: str = "example.com",
    endpoint: str | None = None,
    metadata: dict | None = None,
) -> dict:
    """
    Send one test conversion beacon to the collection endpoint.

    Use this to confirm that the endpoint accepts a partner's conversions
    before the partner goes live.

    Args:
        partner_id: Partner identifier
        click_id: Click id to attribute the test conversion to
        partner_domain: Domain the conversion is reported from
        endpoint: Collection endpoint (default: production endpoint)
        metadata: Extra metadata sent with the conversion

    Returns:
        Delivery result with attempts and HTTP status
    """
    from dinelportal.tracking import (
        DEFAULT_ENDPOINT,
        AttributionConfidence,
        BeaconDispatcher,
        ConversionEvent,
        ConversionTrigger,
        TrackingPayload,
        is_valid_partner_id,
    )

    if not is_valid_partner_id(partner_id):
        return {"success": False, "error": f"Invalid partner_id: {partner_id!r}"}

    event = ConversionEvent(
        identifier=click_id,
        fingerprint=None,
        confidence=AttributionConfidence.CONFIDENT,
        trigger=ConversionTrigger.MANUAL,
        page_url=f"https://{partner_domain}/",
        timestamp=datetime.now(UTC),
        metadata={**(metadata or {}), "test": True},
    )
    payload = TrackingPayload.for_conversion(event, partner_id, partner_domain)

    dispatcher = BeaconDispatcher(endpoint=endpoint or DEFAULT_ENDPOINT)
    try:
        result = dispatcher.send(payload)
    finally:
        dispatcher.close()

    logger.info(f"Test conversion for {partner_id}: delivered={result.delivered}")
    return {
        "success": result.delivered,
        "event_id": str(event.event_id),
        "attempts": result.attempts,
        "status_code": result.status_code,
        "error": result.error,
    }


# =============================================================================
# Resources
# =============================================================================


@mcp.resource("tracking://defaults")
def tracking_defaults() -> str:
    """Default tracking configuration for new partners."""
    from dinelportal.tracking import TrackingConfig

    config = TrackingConfig()
    return f"""Endpoint: {config.endpoint}
Click id parameter: {config.click_id_param}
Identifier lifetime: {config.cookie_days} days
Storage key prefix: {config.key_prefix}
Conversion patterns: {', '.join(config.conversion_patterns)}
Title patterns: {', '.join(config.title_patterns)}
Beacon method: {config.beacon_method}
Retries: {config.max_retries}"""


# =============================================================================
# Prompts
# =============================================================================


@mcp.prompt()
def diagnose_partner_setup(partner_id: str, site_url: str) -> str:
    """Prompt for diagnosing a partner's tracking integration."""
    return f"""Diagnose the DinElportal tracking setup for partner "{partner_id}" on {site_url}.

Steps:
1. Generate the expected embed snippet and compare it with the partner's
2. Check that a landing URL with ?click_id=dep_test yields a click id
3. Check that the partner's confirmation page matches a conversion pattern
4. Send a test conversion and report the delivery result

Summarize what works and what the partner needs to change."""


def main():
    """Run the MCP server."""
    mcp.run()


if __name__ == "__main__":
    main()
