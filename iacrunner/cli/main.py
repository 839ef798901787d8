"""Main CLI entry point for the runner."""

import argparse
import sys
from typing import Optional

from .commands import list_steps, prepare_workspace, render_script


def _add_common_arguments(parser: argparse.ArgumentParser):
    parser.add_argument(
        '--log-level',
        choices=['debug', 'info', 'warn', 'error'],
        default='warn',
        help='Set log level'
    )


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the runner CLI."""
    parser = argparse.ArgumentParser(
        prog='iacrun',
        description='Infrastructure-as-code task step runner'
    )

    subparsers = parser.add_subparsers(dest='command', help='Commands')

    # Render command
    render_parser = subparsers.add_parser('render', help='Print the script of a step')
    render_parser.add_argument(
        'request',
        type=str,
        help='Path to run request YAML file'
    )
    render_parser.add_argument(
        '--config',
        type=str,
        help='Path to runner config YAML file'
    )
    _add_common_arguments(render_parser)

    # Prepare command
    prepare_parser = subparsers.add_parser(
        'prepare', help='Build the workspace and step script without running it'
    )
    prepare_parser.add_argument(
        'request',
        type=str,
        help='Path to run request YAML file'
    )
    prepare_parser.add_argument(
        '--config',
        type=str,
        help='Path to runner config YAML file'
    )
    prepare_parser.add_argument(
        '--storage-path',
        type=str,
        help='Override the workspace storage directory'
    )
    _add_common_arguments(prepare_parser)

    # Steps command
    steps_parser = subparsers.add_parser('steps', help='List the steps planned for a task type')
    steps_parser.add_argument(
        'task_type',
        type=str,
        help='Task type (plan, apply, destroy, scan, parse)'
    )
    steps_parser.add_argument(
        '--playbook',
        type=str,
        help='Playbook path; adds the configure step to apply tasks'
    )
    steps_parser.add_argument(
        '--target',
        action='append',
        metavar='ADDRESS',
        help='Resource target (can be specified multiple times)'
    )
    steps_parser.add_argument(
        '--auto-approve',
        action='store_true',
        help='Approve apply/destroy steps up front'
    )
    _add_common_arguments(steps_parser)

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI."""
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == 'render':
        return render_script(parsed_args)
    elif parsed_args.command == 'prepare':
        return prepare_workspace(parsed_args)
    elif parsed_args.command == 'steps':
        return list_steps(parsed_args)
    else:
        parser.print_help()
        return 1


if __name__ == '__main__':
    sys.exit(main())
