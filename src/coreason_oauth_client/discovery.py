# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_oauth_client

"""
DiscoveryClient component for fetching and validating the discovery document and JWKS.
"""

from typing import Any
from urllib.parse import urlparse

import httpx
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_oauth_client.config import OAuthClientConfig, url_satisfies_https
from coreason_oauth_client.events import EventBus, EventType
from coreason_oauth_client.exceptions import (
    DiscoveryFormatError,
    DiscoveryValidationError,
    MalformedResponseError,
    NetworkError,
)
from coreason_oauth_client.models import DiscoveryDocument
from coreason_oauth_client.transport import fetch_json
from coreason_oauth_client.utils.logger import logger

tracer = trace.get_tracer(__name__)


def origin_of(url: str) -> str:
    """Returns ``scheme://host[:port]`` of a URL, lowercased, with default ports dropped."""
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    host = (parsed.hostname or "").lower()
    port = parsed.port
    if port is None or (scheme, port) in {("https", 443), ("http", 80)}:
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


class DiscoveryClient:
    """
    Fetches the Identity Provider's discovery document and JWKS and keeps them until the next load.

    Attributes:
        document (DiscoveryDocument | None): The last successfully validated discovery document.
        jwks (dict[str, Any] | None): The key set fetched from the document's ``jwks_uri``.
    """

    def __init__(self, config: OAuthClientConfig, client: httpx.AsyncClient, events: EventBus) -> None:
        """
        Initialize the DiscoveryClient.

        Args:
            config: The client configuration (issuer, https policy, validation flags).
            client: The async HTTP client to use for requests.
            events: Where lifecycle events are published.
        """
        self.config = config
        self.client = client
        self.events = events
        self.document: DiscoveryDocument | None = None
        self.jwks: dict[str, Any] | None = None

    @property
    def loaded(self) -> bool:
        return self.document is not None

    def validate_url(self, name: str, url: str) -> None:
        """
        Checks one endpoint URL against the https policy and the issuer's origin.

        Raises:
            DiscoveryValidationError: If the URL fails either check.
        """
        if not url_satisfies_https(url, self.config.require_https):
            raise DiscoveryValidationError(f"'{name}' must use https: {url}")

        if not self.config.strict_discovery_document_validation:
            return

        trusted = {origin_of(self.config.issuer)} if self.config.issuer else set()
        trusted.update(origin_of(o) for o in self.config.additional_trusted_origins)
        if origin_of(url) not in trusted:
            raise DiscoveryValidationError(f"'{name}' does not belong to the issuer's origin: {url}")

    def validate_document(self, document: DiscoveryDocument) -> None:
        """
        Validates the issuer and every endpoint of a discovery document.

        Raises:
            DiscoveryValidationError: On issuer mismatch or an untrusted/insecure endpoint.
        """
        check_issuer = self.config.strict_discovery_document_validation and not self.config.skip_issuer_check
        if check_issuer and document.issuer != self.config.issuer:
            raise DiscoveryValidationError(
                f"Invalid issuer in discovery document: expected {self.config.issuer}, got {document.issuer}"
            )

        for name, url in document.endpoint_urls().items():
            self.validate_url(name, url)

    async def load(self, url: str | None = None) -> DiscoveryDocument:
        """
        Loads, validates and caches the discovery document, then loads the JWKS.

        Emits an OpenTelemetry span `load_discovery_document` and, on success, exactly one
        `discovery_document_loaded` event.

        Args:
            url: The full discovery URL. Derived from the issuer when omitted.

        Returns:
            DiscoveryDocument: The validated document.

        Raises:
            NetworkError: If fetching the document or the JWKS fails.
            DiscoveryFormatError: If the document or JWKS is malformed.
            DiscoveryValidationError: If the document does not match the configuration.
        """
        url = url or self.config.default_discovery_document_url

        with tracer.start_as_current_span("load_discovery_document") as span:
            span.set_attribute("url.full", url)
            try:
                if not url_satisfies_https(url, self.config.require_https):
                    raise DiscoveryValidationError(f"Discovery document URL must use https: {url}")
                data = await self._fetch_object(url)
                try:
                    document = DiscoveryDocument(**data)
                except ValidationError as e:
                    raise DiscoveryFormatError(f"Invalid discovery document from {url}: {e}") from e
                self.validate_document(document)
            except DiscoveryValidationError as e:
                logger.error(f"Discovery document rejected: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                self.events.emit(EventType.DISCOVERY_DOCUMENT_VALIDATION_ERROR, reason=e)
                raise
            except (NetworkError, DiscoveryFormatError) as e:
                logger.error(f"Loading discovery document failed: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                self.events.emit(EventType.DISCOVERY_DOCUMENT_LOAD_ERROR, reason=e)
                raise

            if self.config.session_checks_enabled and not document.check_session_iframe:
                logger.warning("session_checks_enabled is set, but the provider has no check_session_iframe")

            previous = (self.document, self.jwks)
            self.document = document
            self.jwks = None
            try:
                jwks = await self.load_jwks()
            except (NetworkError, DiscoveryFormatError):
                self.document, self.jwks = previous
                raise

            span.set_status(Status(StatusCode.OK))
            self.events.emit(
                EventType.DISCOVERY_DOCUMENT_LOADED,
                info={"discovery_document": document, "jwks": jwks},
            )
            logger.info(f"Discovery document loaded for issuer {document.issuer}")
            return document

    async def load_jwks(self) -> dict[str, Any]:
        """
        Fetches the JWKS from the document's ``jwks_uri`` and caches it. Safe to call repeatedly.

        Raises:
            DiscoveryFormatError: If no discovery document is loaded or the key set is malformed.
            NetworkError: If fetching fails.
        """
        if self.document is None:
            raise DiscoveryFormatError("Cannot load JWKS before a discovery document is loaded")

        jwks_uri = self.document.jwks_uri
        with tracer.start_as_current_span("load_jwks") as span:
            try:
                jwks = await self._fetch_object(jwks_uri)
                if not isinstance(jwks.get("keys"), list):
                    raise DiscoveryFormatError(f"JWKS from {jwks_uri} has no 'keys' list")
            except (NetworkError, DiscoveryFormatError) as e:
                logger.error(f"Loading JWKS failed: {e}")
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, str(e)))
                self.events.emit(EventType.JWKS_LOAD_ERROR, reason=e)
                raise

            self.jwks = jwks
            span.set_attribute("jwks.key_count", len(jwks["keys"]))
            return jwks

    async def _fetch_object(self, url: str) -> dict[str, Any]:
        try:
            return await fetch_json(self.client, url, max_bytes=self.config.max_response_bytes)
        except MalformedResponseError as e:
            raise DiscoveryFormatError(f"Response from {url} is not a JSON object") from e

    def reset(self) -> None:
        """Forgets the cached document and key set."""
        self.document = None
        self.jwks = None

    @property
    def session_checks_supported(self) -> bool:
        return self.document is not None and bool(self.document.check_session_iframe)
