"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field

from subfs.logger import log


@dataclass
class CacheConfig:
    """
    Configuration variables related to the stream cache.

    The total cache budget is not part of this section because it's specified on the
    command-line with --cache.
    """

    # Fetched contents larger than this are never written to the disk cache.
    max_item_size: int = 50 * 1024 * 1024  # 50 MB

    # Seconds that a reader waits on a fetch started by another reader before it
    # starts over.
    fanout_timeout: float = 10.0

    # Prefix of the temporary files holding cached contents (the pid is appended).
    prefix: str = "subfs"

    # Seconds to wait for running fetches to finish when shutting down.
    close_timeout: float = 5.0

    @staticmethod
    def load(section: SectionProxy) -> CacheConfig:
        """Load overridden variables from a section within a config file."""
        config = CacheConfig()

        config.max_item_size = section.getint(
            "max_item_size", fallback=config.max_item_size
        )
        config.fanout_timeout = section.getfloat(
            "fanout_timeout", fallback=config.fanout_timeout
        )
        config.prefix = section.get("prefix", fallback=config.prefix)
        config.close_timeout = section.getfloat(
            "close_timeout", fallback=config.close_timeout
        )

        return config


@dataclass
class StreamConfig:
    """Configuration variables related to the streams requested from the server."""

    # Resolution that the server transcodes videos to.
    video_size: str = "1280x720"

    # Bitrate (kbps) used to estimate the size of transcoded audio. Subsonic doesn't
    # report the size of a transcode, so this deliberately assumes the worst case of
    # MP3 CBR 320 to avoid under-reporting.
    estimate_bitrate: int = 320

    @staticmethod
    def load(section: SectionProxy) -> StreamConfig:
        """Load overridden variables from a section within a config file."""
        config = StreamConfig()

        config.video_size = section.get("video_size", fallback=config.video_size)
        config.estimate_bitrate = section.getint(
            "estimate_bitrate", fallback=config.estimate_bitrate
        )

        return config


@dataclass
class UnmountConfig:
    """Configuration variables related to unmounting during shutdown."""

    retries: int = 3
    backoff: float = 3.0

    @staticmethod
    def load(section: SectionProxy) -> UnmountConfig:
        """Load overridden variables from a section within a config file."""
        config = UnmountConfig()

        config.retries = section.getint("retries", fallback=config.retries)
        config.backoff = section.getfloat("backoff", fallback=config.backoff)

        return config


@dataclass
class Config:
    """Configuration variables."""

    cache: CacheConfig = field(default_factory=CacheConfig)
    stream: StreamConfig = field(default_factory=StreamConfig)
    unmount: UnmountConfig = field(default_factory=UnmountConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "cache" in parser:
                config.cache = CacheConfig.load(parser["cache"])
            if "stream" in parser:
                config.stream = StreamConfig.load(parser["stream"])
            if "unmount" in parser:
                config.unmount = UnmountConfig.load(parser["unmount"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config: {config}")

        return config
