import os
import sys
import argparse
import logging
import argcomplete
import difflib
import typing
from typing import Optional
from logger import configure_logger

MIRROR = "mirror"
VALIDATE = "validate"
INSTALL = "install"
STATUS = "status"
TEST_ENDPOINTS = "test-endpoints"


class ArgumentParser(argparse.ArgumentParser):
    # Usage errors are configuration errors, exit code 2 means partial failure
    def error(self, message: str) -> typing.NoReturn:
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def fuzzy_match(name: str, choices: list[str]) -> Optional[str]:
    matches = difflib.get_close_matches(name, choices, n=1, cutoff=0.5)
    return matches[0] if matches else None


def yaml_completer(prefix: str, parsed_args: str, **kwargs: str) -> list[str]:
    return [f for f in os.listdir('.') if (f.endswith(('.yaml', '.yml')) and f.startswith(prefix))]


def is_yaml(config: str) -> bool:
    return config.endswith('.yaml') or config.endswith('.yml')


def _add_config(parser: ArgumentParser, help: str) -> None:
    parser.add_argument('config', metavar='config', type=str, help=help).completer = yaml_completer  # type: ignore


def _add_docker_host(parser: ArgumentParser) -> None:
    parser.add_argument('--host', dest='docker_host', default='localhost', type=str, help='Run docker on this host over SSH (default: localhost)')
    parser.add_argument('--ssh-user', dest='ssh_user', default='root', type=str, help='SSH user for --host (default: root)')


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(description='Mirror container images into a private registry and install the application stack')
    parser.add_argument('-v', '--verbosity', choices=['debug', 'info', 'warning', 'error', 'critical'], default='info', help='Set the logging level (default: info)')

    subparsers = parser.add_subparsers(title='subcommands', dest='subcommand')

    mirror_parser = subparsers.add_parser(MIRROR, help='Copy images into the destination registry and verify them')
    _add_config(mirror_parser, 'Yaml file with registry and image list')
    mirror_parser.add_argument('-j', '--jobs', dest='jobs', type=int, default=None, help='Number of images mirrored in parallel (default: "parallel" from the config, 1)')
    _add_docker_host(mirror_parser)

    validate_parser = subparsers.add_parser(VALIDATE, help='Check that every mirrored image exists and show its platforms')
    _add_config(validate_parser, 'Yaml file with registry and image list')
    _add_docker_host(validate_parser)

    install_parser = subparsers.add_parser(INSTALL, help='Install stack components with helm')
    _add_config(install_parser, 'Yaml file describing the environment')
    install_parser.add_argument('components', nargs='*', default=[], help='Components to install, "all" or "status" (default: all)')
    install_parser.add_argument('-i', '--interactive', action='store_true', help='Choose components from a menu')

    status_parser = subparsers.add_parser(STATUS, help='Show what is installed in the environment')
    _add_config(status_parser, 'Yaml file describing the environment')

    endpoints_parser = subparsers.add_parser(TEST_ENDPOINTS, help='Smoke test the gateway endpoints of the environment')
    _add_config(endpoints_parser, 'Yaml file describing the environment')

    return parser


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = build_parser()
    argcomplete.autocomplete(parser)

    args = parser.parse_args(argv)
    if not args.subcommand:
        parser.error(f"No subcommand: select one of {MIRROR}, {VALIDATE}, {INSTALL}, {STATUS}, {TEST_ENDPOINTS}")
    if not is_yaml(args.config):
        parser.error("Please specify a yaml configuration file")
    if getattr(args, "jobs", None) is not None and args.jobs < 1:
        parser.error("--jobs must be at least 1")

    configure_logger(getattr(logging, args.verbosity.upper()))
    return args
