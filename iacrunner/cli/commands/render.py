"""render and prepare commands."""

import logging
import sys
from argparse import Namespace

from iacrunner.config import load_config
from iacrunner.exec.dispatcher import LocalRuntime
from iacrunner.exec.runner import TaskRunner
from iacrunner.exec.scripts import ScriptContext, ScriptGenerator

from .common import handle_errors, load_request, setup_logging

logger = logging.getLogger(__name__)


@handle_errors
def render_script(args: Namespace) -> int:
    """Print the script a request would run, without touching any workspace."""
    setup_logging(args)
    config = load_config(args.config)
    request = load_request(args.request)

    script = ScriptGenerator().generate(
        request.step_type, ScriptContext.from_request(request, config.assets_dir)
    )
    sys.stdout.write(script)
    return 0


@handle_errors
def prepare_workspace(args: Namespace) -> int:
    """Build the workspace and step script of a request without starting it."""
    masker = setup_logging(args)
    config = load_config(args.config)
    if args.storage_path:
        config.storage_path = args.storage_path
    request = load_request(args.request)

    runner = TaskRunner(config, LocalRuntime(), masker=masker)
    request, workspace, script_path = runner.prepare(request)
    logger.info(f"Prepared step {request.step} ({request.step_type.value}) of task {request.task_id}")
    print(workspace)
    print(script_path)
    return 0
