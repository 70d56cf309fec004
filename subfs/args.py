"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
from typing import List, Optional

from subfs.constants import API_VERSION, VERSION


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    host: str
    user: str
    password: str
    mount: str

    cache: int

    config: str

    debug: bool
    timeout: int

    @property
    def cache_bytes(self) -> int:
        """Return the cache budget in bytes."""
        return self.cache * 1024 * 1024

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Mount a Subsonic media library as a read-only file system.",
            usage="subfs --host HOST --user USER --password PASSWORD --mount PATH",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (api {API_VERSION})",
            help="show the program version and Subsonic API version",
        )

        # Server connection
        parser.add_argument(
            "--host", type=str, required=True, help="host of the Subsonic server"
        )
        parser.add_argument(
            "--user", type=str, required=True, help="username for the Subsonic server"
        )
        parser.add_argument(
            "--password",
            type=str,
            required=True,
            help="password for the Subsonic server",
        )

        # Local mount
        parser.add_argument(
            "--mount", type=str, required=True, help="path where subfs will be mounted"
        )
        parser.add_argument(
            "--cache",
            type=cls._parse_cache_size,
            help="size of the local file cache in megabytes (default is 100)",
            default=100,
        )

        # Path to (optional) config file
        parser.add_argument(
            "--config",
            type=str,
            help="path to config file (default is ~/.subfs/config)",
            default="~/.subfs/config",
        )

        # Enable debug output for development
        parser.add_argument(
            "--debug", action="store_true", help="enable debug information"
        )

        # Configure network timeout
        parser.add_argument(
            "--timeout",
            type=cls._parse_timeout,
            help="timeout for Subsonic requests in milliseconds",
            default=30000,
        )

        return parser

    @staticmethod
    def _parse_cache_size(arg: str) -> int:
        try:
            val = int(arg)
            assert val >= 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number >= 0")

    @staticmethod
    def _parse_timeout(arg: str) -> int:
        try:
            val = int(arg)
            assert val > 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number > 0")
