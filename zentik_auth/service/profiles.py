from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional, Sequence

from zentik_auth.storage.models import ProviderType

_NON_ALNUM = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class NormalizedProfile:
    """Provider-independent view of an external account."""

    id: str
    email: Optional[str] = None
    display_name: Optional[str] = None
    username: Optional[str] = None
    avatar: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    locale: Optional[str] = None


def _str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _raw(profile: Mapping[str, Any]) -> Mapping[str, Any]:
    """The provider's raw JSON; adapters may wrap it under ``_json``."""
    raw = profile.get("_json")
    return raw if isinstance(raw, Mapping) else profile


def _first_value(items: Any) -> Optional[str]:
    if isinstance(items, Sequence) and not isinstance(items, str) and items:
        first = items[0]
        if isinstance(first, Mapping):
            return _str(first.get("value"))
        return _str(first)
    return None


def _split_name(full_name: Optional[str]) -> tuple[Optional[str], Optional[str]]:
    if not full_name:
        return None, None
    parts = full_name.split()
    if not parts:
        return None, None
    return parts[0], (" ".join(parts[1:]) or None)


def _clean(value: str) -> str:
    return _NON_ALNUM.sub("", value.lower())


def extract_google_username(profile: Mapping[str, Any]) -> str:
    """given+family name, else display name, else email local part; alphanumerics only."""
    raw = _raw(profile)
    name = profile.get("name") if isinstance(profile.get("name"), Mapping) else {}
    given = name.get("givenName") or raw.get("given_name")
    family = name.get("familyName") or raw.get("family_name")
    if given and family:
        return _clean(f"{given}{family}")

    display_name = profile.get("displayName") or (
        raw.get("name") if isinstance(raw.get("name"), str) else None
    )
    if display_name:
        cleaned = _clean(display_name)
        if cleaned:
            return cleaned

    email = _first_value(profile.get("emails")) or _str(raw.get("email"))
    if email:
        local = email.split("@", 1)[0]
        if local:
            return _clean(local)
    return email or _str(profile.get("id")) or _str(raw.get("sub")) or "googleuser"


def extract_field(
    profile: Mapping[str, Any],
    default_keys: Sequence[str],
    mapped_key: Optional[str] = None,
) -> Optional[str]:
    """Configured key first, then the conventional ones."""
    keys = ([mapped_key] if mapped_key else []) + list(default_keys)
    for key in keys:
        value = profile.get(key)
        if value:
            return str(value)
    return None


def normalize_github(profile: Mapping[str, Any], fields: Mapping[str, str]) -> NormalizedProfile:
    raw = _raw(profile)
    display_name = profile.get("displayName") or raw.get("name") or profile.get("username") or raw.get("login")
    first, last = _split_name(raw.get("name") or profile.get("displayName"))
    return NormalizedProfile(
        id=_str(profile.get("id")) or _str(raw.get("id")) or "unknown",
        email=_first_value(profile.get("emails")) or _str(raw.get("email")),
        display_name=_str(display_name),
        username=_str(profile.get("username") or raw.get("login")),
        avatar=_first_value(profile.get("photos")) or _str(raw.get("avatar_url")),
        first_name=first,
        last_name=last,
    )


def normalize_google(profile: Mapping[str, Any], fields: Mapping[str, str]) -> NormalizedProfile:
    raw = _raw(profile)
    name = profile.get("name") if isinstance(profile.get("name"), Mapping) else {}
    return NormalizedProfile(
        id=_str(profile.get("id")) or _str(raw.get("sub")) or "unknown",
        email=_first_value(profile.get("emails")) or _str(raw.get("email")),
        display_name=_str(profile.get("displayName") or (raw.get("name") if isinstance(raw.get("name"), str) else None)),
        username=extract_google_username(profile),
        avatar=_first_value(profile.get("photos")) or _str(raw.get("picture")),
        first_name=_str(name.get("givenName") or raw.get("given_name")),
        last_name=_str(name.get("familyName") or raw.get("family_name")),
    )


def normalize_discord(profile: Mapping[str, Any], fields: Mapping[str, str]) -> NormalizedProfile:
    raw = _raw(profile)
    user_id = _str(raw.get("id")) or "unknown"
    avatar_hash = raw.get("avatar")
    avatar = (
        f"https://cdn.discordapp.com/avatars/{user_id}/{avatar_hash}.png"
        if avatar_hash and user_id != "unknown"
        else None
    )
    display_name = raw.get("global_name") or raw.get("username")
    first, last = _split_name(raw.get("global_name"))
    return NormalizedProfile(
        id=user_id,
        email=_str(raw.get("email")) if raw.get("verified", True) else None,
        display_name=_str(display_name),
        username=_str(raw.get("username")),
        avatar=avatar,
        first_name=first,
        last_name=last,
    )


def normalize_apple(profile: Mapping[str, Any], fields: Mapping[str, str]) -> NormalizedProfile:
    raw = _raw(profile)
    name = raw.get("name") if isinstance(raw.get("name"), Mapping) else {}
    first = _str(name.get("firstName"))
    last = _str(name.get("lastName"))
    display = " ".join(part for part in (first, last) if part) or None
    return NormalizedProfile(
        id=_str(raw.get("sub")) or _str(raw.get("id")) or "unknown",
        email=_str(raw.get("email")),
        display_name=display,
        first_name=first,
        last_name=last,
    )


def normalize_custom(profile: Mapping[str, Any], fields: Mapping[str, str]) -> NormalizedProfile:
    raw = _raw(profile)
    return NormalizedProfile(
        id=extract_field(raw, ("id", "sub", "user_id"), fields.get("id")) or "unknown",
        email=extract_field(raw, ("email",), fields.get("email")),
        display_name=extract_field(raw, ("name", "display_name", "full_name"), fields.get("display_name")),
        username=extract_field(raw, ("username", "preferred_username"), fields.get("username")),
        avatar=extract_field(raw, ("picture", "avatar", "avatar_url"), fields.get("avatar")),
        first_name=extract_field(raw, ("given_name", "first_name"), fields.get("first_name")),
        last_name=extract_field(raw, ("family_name", "last_name"), fields.get("last_name")),
    )


def normalize_default(profile: Mapping[str, Any], fields: Mapping[str, str]) -> NormalizedProfile:
    raw = _raw(profile)
    return NormalizedProfile(
        id=_str(raw.get("id")) or "unknown",
        email=_str(raw.get("email")),
        display_name=_str(raw.get("name") or raw.get("displayName")),
        username=_str(raw.get("username")),
        avatar=_str(raw.get("picture") or raw.get("avatar")),
        first_name=_str(raw.get("given_name") or raw.get("firstName")),
        last_name=_str(raw.get("family_name") or raw.get("lastName")),
    )


_NORMALIZERS: Dict[ProviderType, Callable[[Mapping[str, Any], Mapping[str, str]], NormalizedProfile]] = {
    ProviderType.GITHUB: normalize_github,
    ProviderType.GOOGLE: normalize_google,
    ProviderType.DISCORD: normalize_discord,
    ProviderType.APPLE: normalize_apple,
    ProviderType.APPLE_SIGNIN: normalize_apple,
    ProviderType.CUSTOM: normalize_custom,
}


def normalize_profile(
    provider_type: ProviderType | str,
    profile: Mapping[str, Any],
    profile_fields: Optional[Mapping[str, str]] = None,
) -> NormalizedProfile:
    normalizer = _NORMALIZERS.get(ProviderType(provider_type), normalize_default)
    return normalizer(profile or {}, profile_fields or {})


__all__ = [
    "NormalizedProfile",
    "extract_field",
    "extract_google_username",
    "normalize_profile",
]
