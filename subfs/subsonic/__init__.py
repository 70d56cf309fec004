"""
Client for the Subsonic REST API.

subfs only needs a small part of the API: the artist indexes and directory listings to
build its namespace, and the stream, download and cover art endpoints to read contents.
All calls use the JSON response format and token-less password authentication, which is
supported by every server implementing API version 1.8.0 or newer.
"""

from .client import (
    IncompatibleServer,
    NotAuthorized,
    Stream,
    SubsonicClient,
    SubsonicError,
    UpstreamUnavailable,
)
from .models import Artist, Child, Index, MusicDirectory

__all__ = [
    "Artist",
    "Child",
    "IncompatibleServer",
    "Index",
    "MusicDirectory",
    "NotAuthorized",
    "Stream",
    "SubsonicClient",
    "SubsonicError",
    "UpstreamUnavailable",
]
