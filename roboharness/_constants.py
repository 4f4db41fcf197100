"""Host-wide resource names shared by the submit and batch flows.

This module exists to avoid circular imports between the dispatcher, the
container manager and the batch loop, which all need the same names. Each of
these names is a per-host singleton: at most one batch or submit session may be
active on a host at a time.
"""

from __future__ import annotations

import os
from pathlib import Path

COMMAND = "roboharness"
SUBMIT_COMMAND = "submit"
BATCH_COMMAND = "batch"
CLEANUP_COMMAND = "cleanup"

RESULT_LOCATION_VAR = "ROBOHARNESS_RESULT_LOCATION"
DEFAULT_RESULT_LOCATION = Path("/tmp/roboharness_result")

NETWORK_NAME = "roboharness_network"
SUBMISSION_CONTAINER_NAME = "roboharness_submission"
SUBMISSION_IMAGE_REPO = "roboharness/submission"

DEFAULT_BUNDLE_PATH = Path("submission.tgz")
DEFAULT_SUPERVISOR_URL = "http://localhost:10000"
DEFAULT_CATALOG_COMMAND = "roboharness-catalog get {kind} {name}"
DEFAULT_RUNNER_COMMAND = "roboharness-run --robot {robot} --env {environment} --task {task}"
DEFAULT_EVALUATOR_COMMAND = "roboharness-eval --task {task} --envs {environments} --output {scores_path}"

MOVE_NEXT_ACTION = "move_next"


def result_location() -> Path:
    """Return the well-known result artifact path, honouring the override variable."""
    override = os.environ.get(RESULT_LOCATION_VAR)
    if override:
        return Path(override)
    return DEFAULT_RESULT_LOCATION
