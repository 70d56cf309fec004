"""Module implementing a client for the Subsonic REST API."""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import urlsplit

import requests
import semver

from subfs.constants import API_VERSION, CLIENT_NAME
from subfs.logger import log, summarize
from .models import as_list, decode, Index, MusicDirectory

# Subsonic error code for "user is not authorized for the given operation"
ERROR_NOT_AUTHORIZED = 50

# Size of the chunks that are read from a content stream.
CHUNK_SIZE = 64 * 1024


class UpstreamUnavailable(IOError):
    """Exception raised when a call to the Subsonic server could not be completed."""


class SubsonicError(UpstreamUnavailable):
    """Exception raised when the Subsonic server responds with an error."""

    def __init__(self, code: int, message: str) -> None:
        """Instantiate the exception with the error code and message of the server."""
        super().__init__(f"subsonic error {code}: {message}")

        self.code = code
        self.message = message


class NotAuthorized(SubsonicError):
    """The user is not authorized to perform the requested operation."""


class IncompatibleServer(UpstreamUnavailable):
    """The server speaks a REST API version that this client doesn't support."""


def parse_version(version: str) -> semver.VersionInfo:
    """
    Parse a Subsonic API version.

    Servers sometimes omit the patch number (e.g. "1.16"), which is padded with zeros
    to make it a valid semantic version.
    """
    parts = version.strip().split(".")

    while len(parts) < 3:
        parts.append("0")

    return semver.VersionInfo.parse(".".join(parts[:3]))


def is_compatible(server_version: semver.VersionInfo) -> bool:
    """
    Check if a server API version can be used by this client.

    Subsonic API versions are backwards compatible within the same major version, so the
    server must have an identical major version and at least the minor version of the
    client.
    """
    client_version = parse_version(API_VERSION)

    return (
        server_version.major == client_version.major
        and server_version.minor >= client_version.minor
    )


class Stream:
    """
    Binary content stream opened from the Subsonic server.

    Streams should be closed after use, either explicitly or by using them as a context
    manager.
    """

    def __init__(self, response: requests.Response) -> None:
        """Wrap a streaming HTTP response."""
        self._response = response

    @property
    def length(self) -> Optional[int]:
        """Return the length announced by the server, if any."""
        length = self._response.headers.get("Content-Length")

        return int(length) if length else None

    def chunks(self, chunk_size: int = CHUNK_SIZE) -> Iterator[bytes]:
        """Iterate over the contents of the stream."""
        try:
            yield from self._response.iter_content(chunk_size)
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"stream interrupted: {e}")

    def close(self) -> None:
        """Release the underlying connection."""
        self._response.close()

    def __enter__(self) -> Stream:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()


class SubsonicClient:
    """
    Client to browse and stream from a Subsonic server.

    The client can be used by multiple threads at the same time. All methods raise
    UpstreamUnavailable (or a subclass) if the call failed for any reason.

    Example:
    ```
    client = SubsonicClient("demo.subsonic.org", "guest1", "guest")
    client.ping()

    for index in client.get_indexes():
        for artist in index.artist:
            print(artist.name)
    ```
    """

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        timeout_ms: int = 30000,
        session: Optional[requests.Session] = None,
    ) -> None:
        """Instantiate a client for the server at the given host."""
        self.host = host
        self.user = user
        self.timeout_ms = timeout_ms

        self._base_url = self._compose_base_url(host)
        self._password = password
        self._session = session or requests.Session()

    @staticmethod
    def _compose_base_url(host: str) -> str:
        """Determine the REST endpoint root, assuming plain HTTP without a scheme."""
        if not urlsplit(host).scheme:
            host = f"http://{host}"

        return host.rstrip("/") + "/rest"

    def ping(self) -> semver.VersionInfo:
        """
        Check if the server is available and the credentials are valid.

        Returns the API version of the server, which is also checked for compatibility.
        """
        response = self._call("ping")
        version = parse_version(response.get("version", "0.0.0"))

        if not is_compatible(version):
            raise IncompatibleServer(
                f"incompatible server api ({version} is not compatible with "
                f"{API_VERSION})"
            )

        return version

    def get_indexes(self) -> List[Index]:
        """Retrieve the artist indexes of all music folders."""
        response = self._call("getIndexes")
        indexes = response.get("indexes") or {}

        return [decode(Index, index) for index in as_list(indexes.get("index"))]

    def get_music_directory(self, id: str) -> MusicDirectory:
        """Retrieve the contents of a music directory."""
        response = self._call("getMusicDirectory", id=id)

        return decode(MusicDirectory, response.get("directory") or {"id": id})

    def stream(self, id: str, size: Optional[str] = None) -> Stream:
        """
        Open a (possibly transcoded) stream of a media file.

        Videos are transcoded to the resolution specified by size, e.g. "1280x720".
        """
        params = {"id": id}

        if size:
            params["size"] = size

        return self._open("stream", **params)

    def download(self, id: str) -> Stream:
        """Open a stream of a media file in its original, non-transcoded form."""
        return self._open("download", id=id)

    def get_cover_art(self, id: str) -> Stream:
        """Open a stream of cover art in its original size."""
        return self._open("getCoverArt", id=id)

    def _params(self, **params: Any) -> Dict[str, Any]:
        """Add the authentication and protocol parameters to a request."""
        return {
            "u": self.user,
            "p": "enc:" + self._password.encode().hex(),
            "v": API_VERSION,
            "c": CLIENT_NAME,
            "f": "json",
            **params,
        }

    def _request(self, method: str, stream: bool, **params: Any) -> requests.Response:
        """Perform a GET request to a REST method and check the HTTP status."""
        url = f"{self._base_url}/{method}.view"

        t_call = time.time()

        try:
            response = self._session.get(
                url,
                params=self._params(**params),
                timeout=self.timeout_ms / 1000,
                stream=stream,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise UpstreamUnavailable(f"{method} failed: {e}")

        t_return = time.time()

        # Explicit check before logging because summarize is relatively slow
        if log.isEnabledFor(logging.DEBUG):
            t_millis = round((t_return - t_call) * 1000)
            log.debug(f"subsonic::{method}({summarize(params)}) - {t_millis} ms")

        return response

    def _call(self, method: str, **params: Any) -> Dict[str, Any]:
        """Call a REST method that returns a JSON document."""
        response = self._request(method, False, **params)

        try:
            body = response.json()
        except ValueError as e:
            raise UpstreamUnavailable(f"{method} returned an invalid response: {e}")

        return self._unwrap(method, body)

    def _open(self, method: str, **params: Any) -> Stream:
        """
        Call a REST method that returns binary content.

        These methods return a JSON document instead of the content when they fail.
        """
        response = self._request(method, True, **params)

        content_type = response.headers.get("Content-Type", "")

        if content_type.startswith(("application/json", "text/xml", "text/json")):
            try:
                body = response.json()
            except ValueError as e:
                raise UpstreamUnavailable(f"{method} returned an invalid response: {e}")
            finally:
                response.close()

            self._unwrap(method, body)

            raise UpstreamUnavailable(f"{method} returned no content")

        return Stream(response)

    @staticmethod
    def _unwrap(method: str, body: Dict[str, Any]) -> Dict[str, Any]:
        """Extract the payload from a response envelope or raise the error in it."""
        envelope = body.get("subsonic-response") if isinstance(body, dict) else None

        if not isinstance(envelope, dict):
            raise UpstreamUnavailable(f"{method} returned no subsonic-response")

        if envelope.get("status") != "ok":
            error = envelope.get("error") or {}

            code = int(error.get("code", 0))
            message = error.get("message", "unknown error")

            if code == ERROR_NOT_AUTHORIZED:
                raise NotAuthorized(code, message)
            else:
                raise SubsonicError(code, message)

        return envelope
