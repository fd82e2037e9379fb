"""zipback command line entry point."""

import os
import sys
import argparse
import platform
import logging
from typing import List, Optional

from zipback import __version__, create_runner
from zipback.backup.errors import BatchError, ConfigError, ProfileLoadError
from zipback.profiles import boilerplate, load_profile, load_profiles


logger = logging.getLogger(__name__)


def _load(path: str):
    """
    Load a profile file or every profile below a directory.

    Returns:
        (profiles, errors) where errors maps a file to its load error
    """
    if os.path.isdir(path):
        try:
            return load_profiles(path), {}
        except ProfileLoadError as e:
            return e.profiles, e.errors
    try:
        return [load_profile(path)], {}
    except ConfigError as e:
        return [], {path: str(e)}


def cmd_backup(args) -> int:
    runner = create_runner(args.env, log_level=args.loglevel)

    profiles, errors = _load(args.path)
    for path in sorted(errors):
        logger.error(f"Unable to load profile {errors[path]}")

    if not profiles:
        logger.error(f"No valid profiles found in {args.path}")
        return 1

    try:
        runner.run(profiles)
    except BatchError as e:
        logger.error(str(e))
        return 1

    return 1 if errors else 0


def cmd_validate(args) -> int:
    profiles, errors = _load(args.path)
    for profile in profiles:
        print(f"OK       {profile.name} ({profile.type.value}) {profile.source_file}")
    for path in sorted(errors):
        print(f"INVALID  {errors[path]}")
    return 1 if errors or not profiles else 0


def cmd_generate(args) -> int:
    sys.stdout.write(boilerplate())
    return 0


def cmd_version(args) -> int:
    print(f"zipback {__version__}")
    print(f"python {platform.python_version()}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='zipback',
        description='Unattended zip backups of files and databases, local or over ssh.'
    )
    subparsers = parser.add_subparsers(dest='command')
    subparsers.required = True

    backup = subparsers.add_parser('backup', help='run a profile file or every *.backup.yaml in a directory')
    backup.add_argument('path', help='profile file or directory')
    backup.add_argument('--loglevel', '-l', default=None, help='log level (debug, info, warning, error)')
    backup.add_argument('--env', default=None, help='configuration: development, production or testing')
    backup.set_defaults(func=cmd_backup)

    validate = subparsers.add_parser('validate', help='load profiles and report errors without running them')
    validate.add_argument('path', help='profile file or directory')
    validate.set_defaults(func=cmd_validate)

    generate = subparsers.add_parser('generate', help='print an example profile')
    generate.set_defaults(func=cmd_generate)

    version = subparsers.add_parser('version', help='print version information')
    version.set_defaults(func=cmd_version)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == '__main__':
    sys.exit(main())
