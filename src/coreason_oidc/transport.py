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
HTTP seam of the client: the fetcher protocol, its httpx implementation and a
transport that mitigates SSRF via DNS rebinding.
"""

import ipaddress
import json
import socket
from collections.abc import Mapping
from typing import Any, Protocol

import httpx

from coreason_oidc.exceptions import OversizedResponseError, SecurityError
from coreason_oidc.utils.logger import logger

MAX_RESPONSE_BYTES = 1_000_000


class HTTPFetcher(Protocol):
    """Capability used for every outbound call. Swap it for a double in tests."""

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> httpx.Response: ...

    def post(
        self,
        url: str,
        *,
        data: Mapping[str, str],
        headers: Mapping[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> httpx.Response: ...


class HttpxFetcher:
    """
    `HTTPFetcher` backed by an `httpx.Client`.

    Attributes:
        client (httpx.Client): The client used for all requests.
    """

    def __init__(self, client: httpx.Client) -> None:
        self.client = client

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> httpx.Response:
        return self.client.get(url, headers=dict(headers or {}), follow_redirects=True)

    def post(
        self,
        url: str,
        *,
        data: Mapping[str, str],
        headers: Mapping[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> httpx.Response:
        return self.client.post(url, data=dict(data), headers=dict(headers or {}), auth=auth)

    def close(self) -> None:
        self.client.close()


def read_json(response: httpx.Response, max_bytes: int = MAX_RESPONSE_BYTES) -> Any:
    """
    Decodes a JSON body, refusing bodies larger than `max_bytes`.

    Raises:
        OversizedResponseError: If the body exceeds the limit.
        ValueError: If the body is not valid JSON.
    """
    content_length = response.headers.get("Content-Length")
    if content_length:
        try:
            if int(content_length) > max_bytes:
                raise OversizedResponseError("Response too large")
        except ValueError:
            pass

    content = response.content
    if len(content) > max_bytes:
        raise OversizedResponseError("Response too large")

    return json.loads(content)


class SafeHTTPTransport(httpx.HTTPTransport):
    """
    A secure HTTP transport that enforces DNS pinning to prevent SSRF/DNS Rebinding attacks.

    It resolves the hostname, validates the address against blocked ranges (private,
    loopback, link-local, reserved, multicast) and connects to that specific address
    while preserving the original Host header and SNI for certificate verification.
    """

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        hostname = request.url.host

        try:
            ip_obj = ipaddress.ip_address(hostname)
        except ValueError:
            ip_obj = None

        if ip_obj is not None:
            self._validate_ip(ip_obj, hostname)
            return super().handle_request(request)

        try:
            addr_infos = socket.getaddrinfo(hostname, None, 0, socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.error(f"DNS resolution failed for {hostname}: {e}")
            raise SecurityError(f"DNS resolution failed for {hostname}") from e

        # Only the pinned address is ever contacted, so skipping blocked ones is safe
        target_ip: str | None = None
        for _, _, _, _, sockaddr in addr_infos:
            ip_str = str(sockaddr[0])
            try:
                self._validate_ip(ipaddress.ip_address(ip_str), hostname)
            except (SecurityError, ValueError):
                continue
            target_ip = ip_str
            break

        if not target_ip:
            logger.error(f"Security violation: No valid public IP found for {hostname}")
            raise SecurityError(f"Security violation: No valid public IP found for {hostname}")

        request.extensions["sni_hostname"] = hostname
        if "Host" not in request.headers:
            request.headers["Host"] = request.url.netloc.decode("ascii")
        request.url = request.url.copy_with(host=target_ip)

        logger.debug(f"DNS Pinned: {hostname} -> {target_ip}")

        return super().handle_request(request)

    def _validate_ip(self, ip_obj: Any, hostname: str) -> None:
        if (
            ip_obj.is_private
            or ip_obj.is_loopback
            or ip_obj.is_link_local
            or ip_obj.is_reserved
            or ip_obj.is_multicast
        ):
            logger.warning(f"Security violation: Blocked access to {hostname} ({ip_obj})")
            raise SecurityError(f"Access to {hostname} ({ip_obj}) is blocked")
