"""
workspace-gate entry point.
Builds the ToolGate from settings and prints the effective configuration.

    python -m workspace_gate.main
"""

import json
import logging
import sys

from .config import Settings, get_settings
from .exceptions import ConfigError
from .google.auth import AuthProvider
from .google.drive import DriveFolderClient
from .google.retry import RetryExecutor
from .logging_config import setup_logging
from .pipeline import ToolGate
from .policy.access import AccessPolicyEvaluator

logger = logging.getLogger(__name__)


def build_gate(settings: Settings) -> ToolGate:
    """Wire the policy evaluator and retry executor from ``settings``."""
    retry_config = settings.retry_config
    access_config = settings.access_control_config

    executor = RetryExecutor(retry_config)
    drive = None
    if access_config.folder_restricted:
        auth = AuthProvider(
            service_account_key_path=settings.google_service_account_key_path,
            token_file=settings.google_token_file,
        )
        drive = DriveFolderClient(auth, executor)

    policy = AccessPolicyEvaluator(access_config, drive=drive)
    summary = policy.summary()
    logger.info(
        "Access policy loaded (read_only=%s, restrictions=%s)",
        summary.read_only_mode, summary.has_restrictions,
        extra={"event": summary.to_dict()},
    )
    return ToolGate(policy, executor)


def main() -> int:
    settings = get_settings()
    setup_logging(settings.log_level, settings.logs_dir or None, settings.json_logs)

    try:
        gate = build_gate(settings)
    except ConfigError as e:
        logger.error("Invalid access control configuration: %s", e.message)
        return 1

    print(json.dumps(
        {
            "access_control": gate.policy.summary().to_dict(),
            "retry": gate.executor.config.to_dict(),
        },
        indent=2,
    ))
    return 0


if __name__ == "__main__":
    sys.exit(main())
