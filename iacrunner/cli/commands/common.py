"""Helpers shared by the CLI commands."""

import functools
import logging
from argparse import Namespace
from pathlib import Path

import yaml

from iacrunner.exceptions import ConfigValidationError, ConfigurationError, OrchestratorError
from iacrunner.exec.request import RunTaskRequest
from iacrunner.security.secrets import SecretsMasker, SecretsMaskingFilter

logger = logging.getLogger(__name__)


def setup_logging(args: Namespace) -> SecretsMasker:
    """Configure the root logger; returns the masker its handlers filter through."""
    log_level = getattr(logging, args.log_level.upper())
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    masker = SecretsMasker()
    masking_filter = SecretsMaskingFilter(masker)
    for handler in logging.getLogger().handlers:
        handler.addFilter(masking_filter)
    return masker


def handle_errors(func):
    """Turn runner errors into log lines and exit codes."""
    @functools.wraps(func)
    def wrapper(args: Namespace) -> int:
        try:
            return func(args)
        except ConfigValidationError as e:
            for error in e.errors:
                if error.path:
                    logger.error(f"Config error: {error.path}: {error.message}")
                else:
                    logger.error(f"Config error: {error.message}")
            return e.exit_code
        except OrchestratorError as e:
            logger.error(f"{e.error_type}: {e.message}")
            return e.exit_code
        except FileNotFoundError as e:
            logger.error(str(e))
            return 1
    return wrapper


def load_request(path: str) -> RunTaskRequest:
    """Read a run request from a YAML (or JSON) file."""
    request_path = Path(path)
    if not request_path.exists():
        raise FileNotFoundError(f"Request file not found: {request_path}")

    with open(request_path, 'r') as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"invalid request file: {e}", {"path": str(request_path)}) from e
    return RunTaskRequest.from_dict(data)
