"""Default pipeline settings."""

import os

DEFAULTS = {
    "model": "claude-sonnet-4-5-20250929",
    "max_tokens": 16000,
    "planner_max_tokens": 4000,
    "linter_max_tokens": 1000,
    "max_build_attempts": 3,        # builder calls per file, first try included
    "ghost_fixer_attempts": 3,      # continuation calls per truncated artifact
    "ghost_fixer_tail_chars": 400,  # trailing context sent with a continuation
    "soft_admit": True,             # admit a still-failing file after the last attempt
    "soft_admit_min_chars": 50,
    "remote_lint": False,           # ask the Linter stage after a static pass
    "default_line_budget": 150,
    "heartbeat_interval": 15,       # seconds between keep-alive frames
    "event_queue_size": 64,
    "stage_base_url": "http://127.0.0.1:5001",
    "stage_timeout": 300,
    "bundle_path": "/__bundle__.tsx",
    "app_path": "/App.tsx",
    "starting_balance": 50,         # in-process ledger only
    "privileged_users": [],
    "store_dir": "",                # empty keeps generated files in memory
}

# Credit policy. cost = ceil(file_count * base_rate * multipliers[tier])
PRICING = {
    "base_rate": 2,
    "multipliers": {
        "low": 0.5,
        "medium": 1.0,
        "high": 1.5,
    },
    "default_tier": "medium",
}


def _coerce(raw, default):
    """Parse an env string into the type of the default, or keep the default."""
    if isinstance(default, bool):
        return raw.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(default, int):
        try:
            return int(raw)
        except ValueError:
            return default
    if isinstance(default, float):
        try:
            return float(raw)
        except ValueError:
            return default
    if isinstance(default, list):
        return [item.strip() for item in raw.split(",") if item.strip()]
    return raw


def load_settings(env=None):
    """Return DEFAULTS overlaid with VIBE_<KEY> environment variables.

    VIBE_STAGE_BASE_URL=http://stages:5001 overrides "stage_base_url", and so on.
    Pricing is overridable through VIBE_BASE_RATE and VIBE_MULTIPLIER_<TIER>.
    """
    env = os.environ if env is None else env
    settings = dict(DEFAULTS)
    settings["privileged_users"] = list(DEFAULTS["privileged_users"])
    for key, default in DEFAULTS.items():
        raw = env.get(f"VIBE_{key.upper()}")
        if raw is not None:
            settings[key] = _coerce(raw, default)
    settings["max_build_attempts"] = max(1, settings["max_build_attempts"])

    pricing = {
        "base_rate": PRICING["base_rate"],
        "multipliers": dict(PRICING["multipliers"]),
        "default_tier": PRICING["default_tier"],
    }
    raw_rate = env.get("VIBE_BASE_RATE")
    if raw_rate is not None:
        pricing["base_rate"] = _coerce(raw_rate, float(PRICING["base_rate"]))
    for tier, multiplier in PRICING["multipliers"].items():
        raw = env.get(f"VIBE_MULTIPLIER_{tier.upper()}")
        if raw is not None:
            pricing["multipliers"][tier] = _coerce(raw, float(multiplier))
    settings["pricing"] = pricing
    settings["service_token"] = env.get("VIBE_SERVICE_TOKEN", "")
    return settings

# Overwrite guardrails for applying healed code over existing code.
# Micro-edit prompts get the stricter profile.
GUARDRAILS = {
    "activation_chars": 200,        # old code shorter than this is never guarded
    "min_old_lines": 50,            # line-count guard only above this size
    "normal": {"min_length_ratio": 0.4, "min_line_ratio": 0.3},
    "micro": {"min_length_ratio": 0.7, "min_line_ratio": 0.6},
    "micro_max_words": 15,
}
