import argparse
import os
import sys

# important: this needs to be free of stackcheck imports


def set_profile_from_sys_argv():
    """
    Reads the ``--profile`` flag from the command line, and sets the ``CONFIG_PROFILE`` environment variable which is
    later picked up by ``stackcheck.config``. All occurrences are removed from ``sys.argv`` (the last one wins), so the
    flag can be given at any point of the command line.

    Unlike other tools, ``-p`` is not accepted as a shorthand, since the commands use it for parameter values.
    """
    parser = argparse.ArgumentParser(add_help=False)
    parser.add_argument("--profile")
    namespace, sys.argv = parser.parse_known_args(sys.argv)
    if namespace.profile:
        os.environ["CONFIG_PROFILE"] = namespace.profile.strip()
