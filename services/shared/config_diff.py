"""Field-level diffs between two device configuration documents."""


def flatten(document: dict, prefix: str = "") -> dict:
    """Flatten nested dicts into dotted paths. Lists and scalars are leaves."""
    flat: dict = {}
    for key, value in (document or {}).items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict):
            flat.update(flatten(value, path))
        else:
            flat[path] = value
    return flat


def compute_structured_delta(new: dict, old: dict) -> dict:
    """
    Return a structured diff between a new and a stored configuration.

    Returns:
        {
            "added": {"path": new_value, ...},      # in new, not in old
            "removed": {"path": old_value, ...},    # in old, not in new
            "changed": {                            # in both, but different values
                "path": {"old_value": old_val, "new_value": new_val},
                ...
            },
            "unchanged_count": int,
        }
    """
    new_flat = flatten(new)
    old_flat = flatten(old)

    new_keys = set(new_flat)
    old_keys = set(old_flat)

    added = {k: new_flat[k] for k in sorted(new_keys - old_keys)}
    removed = {k: old_flat[k] for k in sorted(old_keys - new_keys)}

    changed: dict = {}
    unchanged_count = 0
    for k in sorted(new_keys & old_keys):
        if new_flat[k] != old_flat[k]:
            changed[k] = {
                "old_value": old_flat[k],
                "new_value": new_flat[k],
            }
        else:
            unchanged_count += 1

    return {
        "added": added,
        "removed": removed,
        "changed": changed,
        "unchanged_count": unchanged_count,
    }


def short_path(path: str) -> str:
    # "controls.valveShutOff.phHigh" -> "valveShutOff.phHigh"
    parts = path.split(".")
    return ".".join(parts[-2:]) if len(parts) > 2 else path


def describe_changes(new: dict, old: dict) -> list[str]:
    """Human-readable ``path: old -> new`` lines for every added or changed leaf."""
    delta = compute_structured_delta(new, old)
    lines = [f"{short_path(path)}: None -> {value}" for path, value in delta["added"].items()]
    lines.extend(
        f"{short_path(path)}: {change['old_value']} -> {change['new_value']}"
        for path, change in delta["changed"].items()
    )
    return lines
