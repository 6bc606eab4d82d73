# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oidc

"""
OIDC Provider component for fetching and caching provider metadata and JWKS.
"""

from collections.abc import Iterable
from typing import Any
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError

from coreason_oidc.config import OIDCClientConfig
from coreason_oidc.exceptions import ConfigurationError, CoreasonOIDCError, DiscoveryError
from coreason_oidc.models import JWKSet, ProviderMetadata
from coreason_oidc.transport import HTTPFetcher, read_json
from coreason_oidc.utils.logger import logger

WELL_KNOWN_PATH = "/.well-known/openid-configuration"


class OIDCProvider:
    """
    Fetches and caches the Identity Provider's configuration and JWKS.

    Both are cached for the lifetime of the instance. Manually configured metadata
    (`OIDCClientConfig.provider_metadata`) always wins over discovered values.

    Attributes:
        config (OIDCClientConfig): The client configuration.
        fetcher (HTTPFetcher): The HTTP capability used for discovery and JWKS.
    """

    def __init__(self, config: OIDCClientConfig, fetcher: HTTPFetcher) -> None:
        self.config = config
        self.fetcher = fetcher
        self._metadata_cache: ProviderMetadata | None = None
        self._jwks_cache: JWKSet | None = None

    @property
    def well_known_url(self) -> str:
        """
        The discovery URL, including any caller supplied query parameters.

        Raises:
            DiscoveryError: If no provider URL is configured.
        """
        if not self.config.provider_url:
            raise DiscoveryError("The provider URL has not been set")

        url = self.config.provider_url.rstrip("/") + WELL_KNOWN_PATH
        if self.config.well_known_config_parameters:
            url = f"{url}?{urlencode(self.config.well_known_config_parameters)}"
        return url

    def _fetch_json(self, url: str, what: str) -> Any:
        try:
            response = self.fetcher.get(url)
            response.raise_for_status()
            return read_json(response)
        except DiscoveryError:
            raise
        except (httpx.HTTPError, CoreasonOIDCError) as e:
            logger.warning(f"Failed to fetch {what} from {url}: {e}")
            raise DiscoveryError(f"Failed to fetch {what} from {url}: {e}") from e
        except ValueError as e:
            logger.warning(f"Invalid JSON in {what} from {url}")
            raise DiscoveryError(f"Invalid JSON in {what} from {url}: {e}") from e

    def _fetch_oidc_config(self) -> ProviderMetadata:
        """
        Fetches the discovery document and merges the manual overrides over it.

        Raises:
            DiscoveryError: If the request fails or the document has no issuer.
        """
        url = self.well_known_url
        document = self._fetch_json(url, "OIDC configuration")

        if not isinstance(document, dict) or not document.get("issuer"):
            raise DiscoveryError(f"OIDC configuration from {url} does not contain 'issuer'")

        try:
            metadata = ProviderMetadata(**{**document, **self.config.provider_metadata})
        except ValidationError as e:
            raise DiscoveryError(f"Invalid OIDC configuration from {url}: {e}") from e

        logger.info(f"Discovered OIDC provider {metadata.issuer}")
        return metadata

    def discover(self) -> ProviderMetadata:
        """
        Returns the provider metadata, fetching it on first use.

        Returns:
            ProviderMetadata: Discovered metadata with manual overrides applied.

        Raises:
            DiscoveryError: If the provider URL is unset, the fetch fails or the document is invalid.
        """
        if self._metadata_cache is None:
            self._metadata_cache = self._fetch_oidc_config()
        return self._metadata_cache

    def metadata(self, required: Iterable[str] = ()) -> ProviderMetadata:
        """
        Returns metadata holding `required`, without network I/O when the manual
        configuration already provides every required key. Without a provider URL
        only the manual configuration is returned; callers report what is missing.

        Raises:
            DiscoveryError: If discovery is needed and fails.
        """
        if self._metadata_cache is not None:
            return self._metadata_cache

        overrides = self.config.provider_metadata
        if not self.config.provider_url or all(overrides.get(key) for key in required):
            try:
                return ProviderMetadata(**overrides)
            except ValidationError as e:
                raise DiscoveryError(f"Invalid manual provider metadata: {e}") from e

        return self.discover()

    def get_jwks(self) -> JWKSet:
        """
        Returns the JWKS, fetching it from `jwks_uri` on first use.

        Raises:
            DiscoveryError: If `jwks_uri` is unknown, unreachable or not a key set.
        """
        if self._jwks_cache is not None:
            return self._jwks_cache

        jwks_uri = self.metadata(required=("jwks_uri",)).jwks_uri
        if not jwks_uri:
            raise DiscoveryError("OIDC configuration does not contain 'jwks_uri'")

        data = self._fetch_json(jwks_uri, "JWKS")
        if not isinstance(data, dict) or not isinstance(data.get("keys"), list):
            raise DiscoveryError(f"Invalid JSON Web Key Set from {jwks_uri}")

        self._jwks_cache = JWKSet(keys=tuple(key for key in data["keys"] if isinstance(key, dict)))
        logger.debug(f"Loaded {len(self._jwks_cache.keys)} keys from {jwks_uri}")
        return self._jwks_cache

    def get_issuer(self) -> str:
        """
        Returns the issuer ID Tokens must carry.

        Order: configured issuer, manually configured metadata, discovered metadata.

        Raises:
            ConfigurationError: If none of them is known.
        """
        if self.config.issuer:
            return self.config.issuer

        overrides_issuer = self.config.provider_metadata.get("issuer")
        if overrides_issuer:
            return str(overrides_issuer)

        if self.config.provider_url:
            return str(self.discover().issuer)

        raise ConfigurationError("The issuer is unknown: set 'issuer' or 'provider_url'")

    def invalidate(self) -> None:
        """Drops cached metadata and keys. The next call fetches them again."""
        self._metadata_cache = None
        self._jwks_cache = None
