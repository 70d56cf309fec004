"""
Module implementing the command-line interface and invoking the main logic of subfs.

subfs mounts the library of a Subsonic server as a read-only file system. It runs in
the foreground until it receives SIGINT or SIGTERM, after which it cleans up its disk
cache and unmounts the file system.
"""

import logging
import signal
import sys
from typing import List, NoReturn, Optional

import subfs.constants as constants
from subfs.logger import log
import subfs.operations as operations
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Mount the file system with the given arguments and serve it until shut down.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    # Configure debug logging.
    if args.debug:
        log.setLevel(logging.DEBUG)
    else:
        log.setLevel(logging.INFO)

    ops = operations.MountOperations(args)

    try:
        exit_code = ops.run()
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"{e}")
        exit_code = constants.SUBFS_ERROR_CODE

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
