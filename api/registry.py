"""
Client Registry
---------------
Named store of API clients, so independently configured providers are
created once and looked up by name anywhere in the application.

Includes preconfigured factories for common providers.
"""

from typing import Any, Dict, List, Optional
import logging

from api.auth import BasicAuth, BearerAuth
from api.client import APIClient, ClientConfig
from api.rate_limiter import RateLimitConfig, RateLimitStrategy

JSON = "application/json"
FORM = "application/x-www-form-urlencoded"


class ClientRegistry:
    """
    Registry of named APIClient instances.

    Names are unique; create_client() refuses to overwrite a live client.
    """

    def __init__(self):
        self._clients: Dict[str, APIClient] = {}
        self._logger = logging.getLogger("apiclient.registry")

    def create_client(self, name: str, config: Optional[ClientConfig] = None, **client_options: Any) -> APIClient:
        """
        Build and register a client.

        client_options are passed through to APIClient (transport, clock, ...).
        """
        if name in self._clients:
            raise ValueError(f"Client already registered: {name}")

        client = APIClient(config or ClientConfig(), name=name, **client_options)
        self._clients[name] = client
        self._logger.info(f"Registered client: {name} ({client.config.base_url})")
        return client

    def get_client(self, name: str) -> Optional[APIClient]:
        return self._clients.get(name)

    async def remove_client(self, name: str) -> bool:
        """Unregister and close a client. Returns False if unknown."""
        client = self._clients.pop(name, None)
        if client is None:
            return False
        await client.aclose()
        self._logger.info(f"Removed client: {name}")
        return True

    def list_clients(self) -> List[str]:
        return list(self._clients)

    def __contains__(self, name: str) -> bool:
        return name in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    def load_from_yaml(self, path: str, **client_options: Any) -> int:
        """
        Register every client defined in a YAML file.

        Returns number of clients loaded.
        """
        # Imported here: infra.config builds on api.client
        from infra.config import load_client_configs

        count = 0
        for name, config in load_client_configs(path).items():
            self.create_client(name, config, **client_options)
            count += 1
        return count

    async def aclose(self) -> None:
        """Close and unregister every client."""
        for name in list(self._clients):
            await self.remove_client(name)

    # Pre-configured clients for common services

    def _preset(self, name: str, base_url: str, auth, headers: Dict[str, str], **overrides: Any) -> APIClient:
        client_options = {
            key: overrides.pop(key)
            for key in ("transport", "clock", "sleep")
            if key in overrides
        }
        config = ClientConfig(base_url=base_url, auth=auth, headers=headers, **overrides)
        return self.create_client(name, config, **client_options)

    def create_openai_client(self, api_key: str, **overrides: Any) -> APIClient:
        overrides.setdefault(
            "rate_limit",
            RateLimitConfig(requests=60, window=60.0, strategy=RateLimitStrategy.SLIDING),
        )
        return self._preset(
            "openai", "https://api.openai.com/v1",
            BearerAuth(api_key), {"Content-Type": JSON}, **overrides,
        )

    def create_stripe_client(self, api_key: str, **overrides: Any) -> APIClient:
        return self._preset(
            "stripe", "https://api.stripe.com/v1",
            BearerAuth(api_key), {"Content-Type": FORM}, **overrides,
        )

    def create_sendgrid_client(self, api_key: str, **overrides: Any) -> APIClient:
        return self._preset(
            "sendgrid", "https://api.sendgrid.com/v3",
            BearerAuth(api_key), {"Content-Type": JSON}, **overrides,
        )

    def create_twilio_client(self, account_sid: str, auth_token: str, **overrides: Any) -> APIClient:
        return self._preset(
            "twilio", f"https://api.twilio.com/2010-04-01/Accounts/{account_sid}",
            BasicAuth(account_sid, auth_token), {"Content-Type": FORM}, **overrides,
        )

    def create_slack_client(self, token: str, **overrides: Any) -> APIClient:
        return self._preset(
            "slack", "https://slack.com/api",
            BearerAuth(token), {"Content-Type": JSON}, **overrides,
        )

    def create_github_client(self, token: str, **overrides: Any) -> APIClient:
        return self._preset(
            "github", "https://api.github.com",
            BearerAuth(token),
            {"Accept": "application/vnd.github.v3+json", "Content-Type": JSON},
            **overrides,
        )

    def create_discord_client(self, token: str, **overrides: Any) -> APIClient:
        return self._preset(
            "discord", "https://discord.com/api/v10",
            BearerAuth(token), {"Content-Type": JSON}, **overrides,
        )

    def create_notion_client(self, token: str, **overrides: Any) -> APIClient:
        return self._preset(
            "notion", "https://api.notion.com/v1",
            BearerAuth(token),
            {"Content-Type": JSON, "Notion-Version": "2022-06-28"},
            **overrides,
        )

    def create_airtable_client(self, api_key: str, **overrides: Any) -> APIClient:
        return self._preset(
            "airtable", "https://api.airtable.com/v0",
            BearerAuth(api_key), {"Content-Type": JSON}, **overrides,
        )


# Process-wide registry, explicitly initialized
_registry: Optional[ClientRegistry] = None


def init_registry() -> ClientRegistry:
    """Create the process-wide registry. Returns the existing one if already initialized."""
    global _registry
    if _registry is None:
        _registry = ClientRegistry()
    return _registry


def get_registry() -> ClientRegistry:
    if _registry is None:
        raise RuntimeError("Client registry not initialized; call init_registry() first")
    return _registry


async def shutdown_registry() -> None:
    """Close every client and drop the process-wide registry."""
    global _registry
    if _registry is not None:
        await _registry.aclose()
        _registry = None
