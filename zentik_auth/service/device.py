from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Optional, Tuple


@dataclass(frozen=True)
class DeviceInfo:
    """Session metadata supplied at login; ``session_id`` selects an in-place update."""

    session_id: Optional[str] = None
    device_name: Optional[str] = None
    operating_system: Optional[str] = None
    browser: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    login_provider: Optional[str] = None

    def with_session(self, session_id: str) -> "DeviceInfo":
        return replace(self, session_id=session_id)

    def metadata(self) -> dict:
        """Fields that were actually provided, excluding ``session_id``."""
        return {
            key: value
            for key, value in (
                ("device_name", self.device_name),
                ("operating_system", self.operating_system),
                ("browser", self.browser),
                ("ip_address", self.ip_address),
                ("user_agent", self.user_agent),
                ("login_provider", self.login_provider),
            )
            if value is not None
        }


# First matching rule wins: (substrings that must all appear, result)
_UA_RULES: Tuple[Tuple[Tuple[str, ...], Tuple[str, str, str]], ...] = (
    (("iphone",), ("iPhone", "iOS", "Safari Mobile")),
    (("ipad",), ("iPad", "iOS", "Safari Mobile")),
    (("ipod",), ("iPod", "iOS", "Safari Mobile")),
    (("android",), ("Android Device", "Android", "Chrome Mobile")),
    (("windows", "mobile"), ("Windows Phone", "Windows Mobile", "IE Mobile")),
    (("windows",), ("Windows PC", "Windows", "Desktop Browser")),
    (("macintosh",), ("Mac", "macOS", "Safari")),
    (("mac os x",), ("Mac", "macOS", "Safari")),
    (("linux",), ("Linux PC", "Linux", "Desktop Browser")),
    (("chrome",), ("Web Browser", "Web Platform", "Chrome")),
    (("firefox",), ("Web Browser", "Web Platform", "Firefox")),
    (("safari",), ("Web Browser", "Web Platform", "Safari")),
    (("opera",), ("Web Browser", "Web Platform", "Opera")),
    (("edge",), ("Web Browser", "Web Platform", "Edge")),
)

_UNKNOWN = ("Unknown Device", "Unknown OS", "Unknown Browser")
_FALLBACK = ("Web Browser", "Web Platform", "Unknown Browser")


def extract_device_info(
    user_agent: Optional[str],
    *,
    ip_address: Optional[str] = None,
    login_provider: Optional[str] = None,
) -> DeviceInfo:
    """Coarse device classification from a User-Agent header."""
    device_name, operating_system, browser = _UNKNOWN
    if user_agent:
        lowered = user_agent.lower()
        device_name, operating_system, browser = _FALLBACK
        for required, result in _UA_RULES:
            if all(part in lowered for part in required):
                device_name, operating_system, browser = result
                break
    return DeviceInfo(
        device_name=device_name,
        operating_system=operating_system,
        browser=browser,
        ip_address=ip_address,
        user_agent=user_agent,
        login_provider=login_provider,
    )


__all__ = ["DeviceInfo", "extract_device_info"]
