import logging
from typing import Iterable

from porter.config import RegistryConfig

logger = logging.getLogger(__name__)

# Username sent along with a token when no username is configured
TOKEN_USERNAME = "token"


def normalize_registry(value: str | None) -> str:
    """Strip the scheme and trailing slash off a registry name or url"""
    trimmed = (value or "").strip()
    trimmed = trimmed.removeprefix("https://").removeprefix("http://")
    return trimmed.removesuffix("/")


def resolve_credentials(
    registries: Iterable[RegistryConfig], registry: str
) -> tuple[str, str]:
    """Return the (username, password) configured for `registry`

    A configured token is used as the password. No match means anonymous
    access, which is returned as empty credentials.
    """
    normalized = normalize_registry(registry)
    for config in registries:
        if normalized not in (
            normalize_registry(config.url),
            normalize_registry(config.name),
        ):
            continue
        username = config.username or ""
        password = config.password or config.token or ""
        if not username and password:
            username = TOKEN_USERNAME
        logger.debug(
            "Resolved registry credentials for %s (username=%s, password_set=%s)",
            normalized,
            username,
            bool(password),
        )
        return username, password

    logger.debug("No registry credentials found for %s", normalized)
    return "", ""
