import logging
from typing import Dict, List, Mapping, Sequence, Tuple

logger = logging.getLogger(__name__)

# Each entry lists accepted names; the first is the one reported.
REQUIRED_ENV: Sequence[Tuple[Tuple[str, ...], str]] = (
    (("JWT_SECRET",), "JWT secret for authentication"),
    (("MONGO_URL", "MONGODB_URI"), "MongoDB connection string"),
    (("GOOGLE_CLIENT_ID",), "Google OAuth client ID"),
    (("GOOGLE_CLIENT_SECRET",), "Google OAuth client secret"),
    (("OPENAI_API_KEY", "OPENROUTER_API_KEY"), "LLM API key for worksheet generation"),
)
OPTIONAL_STRIPE_ENV: Dict[str, str] = {
    "STRIPE_SECRET_KEY": "Stripe secret key",
    "STRIPE_MONTHLY_PRICE_ID": "Stripe monthly plan price ID",
    "STRIPE_ANNUAL_PRICE_ID": "Stripe annual plan price ID",
    "STRIPE_LIFETIME_PRICE_ID": "Stripe lifetime plan price ID",
}


def check_required_env(env: Mapping[str, str]) -> Tuple[List[str], List[str]]:
    """Return ``(missing, warnings)`` for the given environment mapping."""
    missing: List[str] = []
    warnings: List[str] = []
    for names, description in REQUIRED_ENV:
        if not any((env.get(name) or "").strip() for name in names):
            missing.append(f"{names[0]} is required - {description}")

    for name, description in OPTIONAL_STRIPE_ENV.items():
        if not (env.get(name) or "").strip():
            warnings.append(f"{name} is not set - {description}")

    secret_key = (env.get("STRIPE_SECRET_KEY") or "").strip()
    if secret_key and not secret_key.startswith("sk_"):
        missing.append('STRIPE_SECRET_KEY should start with "sk_test_" or "sk_live_"')
    return missing, warnings


def validate_env(env: Mapping[str, str]) -> None:
    missing, warnings = check_required_env(env)
    for message in warnings:
        logger.warning("optional_env_missing %s", message)
    if warnings:
        logger.warning("Payment features are disabled until Stripe is configured")
    if missing:
        raise RuntimeError("Missing or invalid environment variables: " + "; ".join(missing))
    logger.info("All required environment variables are configured")
