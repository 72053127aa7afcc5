"""CLI for running scripts on Azure VMs through the Custom Script Extension.

Usage:
    # Fire-and-forget: upload inline script and trigger it
    python -m vm_script_runner run --vm-name my-vm --script "Write-Output 1"

    # Wait for completion and print stdout
    python -m vm_script_runner run --vm-name my-vm --script-file ./setup.ps1 --wait

    # Run a script already uploaded to the container
    python -m vm_script_runner run --vm-name my-vm --script-name setup.ps1 --args "-Force"

    # Continue waiting on a run after the host was restarted
    python -m vm_script_runner resume --run-id 3f2c...

Unset options fall back to environment variables / .env
(see vm_script_runner.config.Settings).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def _build_runbook(args: argparse.Namespace):
    from vm_script_runner.runbook import ScriptRunbook

    return ScriptRunbook.for_azure(
        resource_group=args.resource_group,
        subscription_id=args.subscription_id,
        storage_account=args.storage_account,
        storage_resource_group=args.storage_resource_group,
        checkpoint_dir=args.checkpoint_dir,
    )


def _report(outcome) -> int:
    print(outcome.render())
    if outcome.error is not None:
        logger.error("Run %s: %s", outcome.run_id, outcome.status.value)
        return 1
    logger.info("Run %s: %s", outcome.run_id, outcome.status.value)
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    """Stage a script, trigger it, and optionally wait for its output."""
    from azure.core.exceptions import AzureError

    from vm_script_runner.config import settings
    from vm_script_runner.errors import ScriptRunnerError
    from vm_script_runner.models import script_source_from_options

    inline_script = args.script
    if args.script_file:
        if inline_script:
            logger.error("Use either --script or --script-file, not both")
            return 1
        try:
            inline_script = Path(args.script_file).read_text(encoding="utf-8")
        except OSError as e:
            logger.error(f"Could not read {args.script_file}: {e}")
            return 1

    try:
        # Fail on ambiguous/missing sources before touching Azure
        script_source_from_options(inline_script, args.script_name)
        runbook = _build_runbook(args)
        outcome = runbook.run(
            args.vm_name,
            inline_script=inline_script,
            script_name=args.script_name,
            arguments=args.args,
            container=args.container or settings.script_container,
            wait=args.wait,
            poll_interval=(
                settings.poll_interval_seconds
                if args.poll_interval is None
                else args.poll_interval
            ),
            timeout=settings.poll_timeout_seconds if args.timeout is None else args.timeout,
        )
    except (ScriptRunnerError, AzureError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    return _report(outcome)


def cmd_resume(args: argparse.Namespace) -> int:
    """Resume polling a run from its checkpoint."""
    from azure.core.exceptions import AzureError

    from vm_script_runner.checkpoint import CheckpointStore
    from vm_script_runner.config import settings
    from vm_script_runner.errors import ScriptRunnerError

    try:
        if not args.resource_group:
            # The checkpoint records which resource group the run targets
            store = CheckpointStore(args.checkpoint_dir or settings.checkpoint_dir)
            args.resource_group = store.load(args.run_id).request.resource_group
        runbook = _build_runbook(args)
        outcome = runbook.resume(args.run_id)
    except (ScriptRunnerError, AzureError, ValueError) as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    return _report(outcome)


def _add_azure_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--resource-group", "-g", type=str,
                        help="Resource group of the VM (AZURE_RESOURCE_GROUP)")
    parser.add_argument("--subscription-id", type=str,
                        help="Azure subscription (AZURE_SUBSCRIPTION_ID)")
    parser.add_argument("--storage-account", type=str,
                        help="Storage account for scripts (AZURE_STORAGE_ACCOUNT)")
    parser.add_argument("--storage-resource-group", type=str,
                        help="Resource group of the storage account")
    parser.add_argument("--checkpoint-dir", type=str,
                        help="Directory for resumable poll state")


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="Run scripts on Azure VMs via the Custom Script Extension",
        prog="python -m vm_script_runner",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Upload and run a script on a VM")
    run_parser.add_argument("--vm-name", "-n", type=str, required=True, help="Target VM name")
    run_parser.add_argument("--script", type=str, help="Inline script content")
    run_parser.add_argument("--script-file", type=str,
                            help="Local script file uploaded as inline content")
    run_parser.add_argument("--script-name", type=str,
                            help="Name of a script already in the container")
    run_parser.add_argument("--args", type=str, help="Argument string passed to the script")
    run_parser.add_argument("--container", type=str, help="Blob container (default: customscripts)")
    run_parser.add_argument("--wait", action="store_true", help="Wait for the script to finish")
    run_parser.add_argument("--poll-interval", type=int, help="Seconds between status checks")
    run_parser.add_argument("--timeout", type=int, help="Total seconds to wait")
    _add_azure_args(run_parser)

    resume_parser = subparsers.add_parser("resume", help="Resume waiting on a run")
    resume_parser.add_argument("--run-id", type=str, required=True, help="Run ID to resume")
    _add_azure_args(resume_parser)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    # Dispatch to command handler
    handlers = {
        "run": cmd_run,
        "resume": cmd_resume,
    }

    handler = handlers.get(args.command)
    if handler:
        return handler(args)
    else:
        print(f"Unknown command: {args.command}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
