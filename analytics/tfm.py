"""
Target framework normalization.

Catalog dependency groups carry target frameworks in many spellings
(".NETFramework,Version=v4.7.2", "net472", ".NETCoreApp,Version=v8.0",
"net8.0-windows"). ``normalize_tfm`` maps them to one short name and a
family so adoption can be counted per framework.
"""

import re
from dataclasses import dataclass
from typing import Optional

NET = ".NET"
NET_CORE = ".NET Core"
NET_FRAMEWORK = ".NET Framework"
NET_STANDARD = ".NET Standard"

_VERSION = r"(\d+(?:\.\d+)*)"

_NETCOREAPP_LONG = re.compile(r"^\.NETCoreApp[,\s]*(?:Version=v?)?" + _VERSION + r"$", re.IGNORECASE)
_NETFRAMEWORK_LONG = re.compile(r"^\.NETFramework[,\s]*(?:Version=v?)?" + _VERSION + r"$", re.IGNORECASE)
_NETSTANDARD_LONG = re.compile(r"^\.NETStandard[,\s]*(?:Version=v?)?" + _VERSION + r"$", re.IGNORECASE)
_NETSTANDARD_SHORT = re.compile(r"^netstandard(\d+\.\d+)$", re.IGNORECASE)
_NETCOREAPP_SHORT = re.compile(r"^netcoreapp(\d+\.\d+)$", re.IGNORECASE)
_NET_MODERN_SHORT = re.compile(r"^net(\d+\.\d+)(?:-.*)?$", re.IGNORECASE)
_NETFRAMEWORK_SHORT = re.compile(r"^net(\d{2,3})$", re.IGNORECASE)


@dataclass(frozen=True)
class NormalizedTfm:
    short_name: str
    family: str


def _major(version: str) -> Optional[int]:
    head = version.split(".", 1)[0]
    return int(head) if head.isdigit() else None


def _netcoreapp(version: str) -> NormalizedTfm:
    # NuGet reports .NET 5 and later as NETCoreApp
    major = _major(version)
    if major is not None and major >= 5:
        return NormalizedTfm(f"net{version}", NET)
    return NormalizedTfm(f"netcoreapp{version}", NET_CORE)


def normalize_tfm(raw: Optional[str]) -> Optional[NormalizedTfm]:
    """
    Map a raw target framework to its short name and family.

    Returns None for frameworks outside the tracked families (portable
    profiles, Xamarin, UAP, ...).
    """
    if raw is None or not raw.strip():
        return None
    raw = raw.strip()

    match = _NETCOREAPP_LONG.match(raw)
    if match:
        return _netcoreapp(match.group(1))

    match = _NETFRAMEWORK_LONG.match(raw)
    if match:
        return NormalizedTfm(f"net{match.group(1).replace('.', '')}", NET_FRAMEWORK)

    match = _NETSTANDARD_LONG.match(raw) or _NETSTANDARD_SHORT.match(raw)
    if match:
        return NormalizedTfm(f"netstandard{match.group(1)}", NET_STANDARD)

    match = _NETCOREAPP_SHORT.match(raw)
    if match:
        return _netcoreapp(match.group(1))

    match = _NET_MODERN_SHORT.match(raw)
    if match:
        major = _major(match.group(1))
        if major is not None and major >= 5:
            return NormalizedTfm(f"net{match.group(1)}", NET)

    match = _NETFRAMEWORK_SHORT.match(raw)
    if match:
        return NormalizedTfm(f"net{match.group(1)}", NET_FRAMEWORK)

    return None
