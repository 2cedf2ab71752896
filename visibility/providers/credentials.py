"""
Provider credential lookup.

Credentials are owned outside the pipeline; this module only resolves a
provider name to its secret through the environment variable configured for it.
"""
import os

from visibility.config import PROVIDER_CREDENTIAL_ENV
from visibility.errors import PermanentProviderError


def get_provider_credential(provider: str) -> str:
    env_name = PROVIDER_CREDENTIAL_ENV.get(provider)
    token = os.getenv(env_name) if env_name else None
    if not token:
        raise PermanentProviderError(401, f"No credential configured for provider '{provider}'")
    return token
