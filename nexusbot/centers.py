from __future__ import annotations

import tomllib

from nexusbot.domain import Center


def load_centers(path: str) -> tuple[Center, ...]:
    """Read the [[centers]] tables from a TOML file, keeping file order."""

    try:
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    except FileNotFoundError as e:
        raise RuntimeError(f"Centers file not found: {path}") from e
    except tomllib.TOMLDecodeError as e:
        raise RuntimeError(f"Centers file {path} is not valid TOML: {e}") from e

    entries = raw.get("centers")
    if not isinstance(entries, list) or not entries:
        raise RuntimeError(f"Centers file {path} has no [[centers]] entries")

    centers: list[Center] = []
    seen_ids: set[str] = set()
    for index, item in enumerate(entries):
        try:
            center = Center(
                id=str(item["id"]).strip(),
                display_name=str(item["display_name"]).strip(),
                location_code=int(item["location_code"]),
                address=str(item.get("address", "")).strip(),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise RuntimeError(f"Invalid center #{index + 1} in {path}: {type(e).__name__}: {e}") from e

        if not center.id:
            raise RuntimeError(f"Invalid center #{index + 1} in {path}: empty id")
        if center.id in seen_ids:
            raise RuntimeError(f"Duplicate center id in {path}: {center.id!r}")
        seen_ids.add(center.id)
        centers.append(center)

    return tuple(centers)


def find_center(centers: tuple[Center, ...], center_id: str) -> Center:
    for center in centers:
        if center.id.lower() == center_id.strip().lower():
            return center
    raise RuntimeError(f"Unknown center: {center_id!r}")
