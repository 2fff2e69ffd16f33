"""User-agent labelling for the device list.

These labels are a best-effort display heuristic. Nothing security related
may branch on them; session binding compares the raw header instead.
"""

from __future__ import annotations

from dataclasses import dataclass

# Ordered: Edge and Opera advertise Chrome, Chrome advertises Safari
_BROWSERS = (
    ("Edg", "Edge"),
    ("OPR", "Opera"),
    ("Firefox", "Firefox"),
    ("Chrome", "Chrome"),
    ("Safari", "Safari"),
)

# Ordered: Android advertises Linux, iOS devices advertise Mac OS X
_OPERATING_SYSTEMS = (
    ("Windows", "Windows"),
    ("Android", "Android"),
    ("iPhone", "iOS"),
    ("iPad", "iOS"),
    ("Mac", "macOS"),
    ("Linux", "Linux"),
)


@dataclass(frozen=True)
class UserAgentInfo:
    device_class: str
    browser: str
    os: str


def classify_user_agent(user_agent: str) -> UserAgentInfo:
    ua = user_agent or ""
    if "Tablet" in ua or "iPad" in ua:
        device_class = "Tablet"
    elif "Mobile" in ua:
        device_class = "Mobile"
    else:
        device_class = "Desktop"
    browser = next((label for needle, label in _BROWSERS if needle in ua), "Unknown")
    os_name = next(
        (label for needle, label in _OPERATING_SYSTEMS if needle in ua), "Unknown"
    )
    return UserAgentInfo(device_class=device_class, browser=browser, os=os_name)


def describe_device(user_agent: str) -> str:
    """Short human label such as ``"Chrome on Windows"``."""
    info = classify_user_agent(user_agent)
    if info.browser == "Unknown" and info.os == "Unknown":
        return f"{info.device_class} device"
    return f"{info.browser} on {info.os}"
