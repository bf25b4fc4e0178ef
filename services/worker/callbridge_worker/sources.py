"""Message source client loading.

The concrete provider client lives outside this package; it is located at
runtime from the SOURCE_CLIENT_FACTORY setting, an import path of the form
"package.module:callable". The callable receives the settings and returns a
MessageSourceClient.
"""

import importlib

from callbridge_core.config import Settings
from callbridge_core.providers.base import MessageSourceClient


class SourceClientConfigError(Exception):
    """Raised when the source client factory is missing or invalid."""

    pass


def load_source_client(settings: Settings) -> MessageSourceClient:
    """Build the configured message source client.

    Raises:
        SourceClientConfigError: If the factory cannot be imported or does
            not return a MessageSourceClient.
    """
    path = settings.source_client_factory
    if not path or ":" not in path:
        raise SourceClientConfigError(
            "SOURCE_CLIENT_FACTORY must be set to 'module:callable'"
        )

    module_name, attr = path.split(":", 1)
    try:
        factory = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise SourceClientConfigError(f"cannot load source client factory '{path}': {e}") from e

    client = factory(settings)
    if not isinstance(client, MessageSourceClient):
        raise SourceClientConfigError(
            f"source client factory '{path}' returned {type(client).__name__}, "
            "expected a MessageSourceClient"
        )
    return client
