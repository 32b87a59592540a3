import json

import pytest

from clipchain.cli import build_parser, load_job, main
from clipchain.core.exceptions import ClipChainError, ValidationError
from clipchain.core.config import reset_config
from clipchain.workflow.jobs import FailurePolicy, JobStore
from clipchain.workflow.stitcher import TransitionType


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(f"output:\n  base_path: {tmp_path / 'output'}\n")
    yield path
    reset_config()


def test_run_requires_job_file() -> None:
    with pytest.raises(SystemExit):
        build_parser().parse_args(["run"])


def test_policy_choices_match_failure_policies() -> None:
    args = build_parser().parse_args(["run", "job.yaml", "--policy", "best-effort"])

    assert args.policy == "best-effort"
    assert args.enhance is None


def test_load_job_defaults_id_to_file_name(tmp_path) -> None:
    job_file = tmp_path / "harbour.yaml"
    job_file.write_text(
        "image_prompt: A fishing harbour at dawn\n"
        "policy: best-effort\n"
        "transition:\n"
        "  type: dissolve\n"
        "  duration: 0.75\n"
        "segments:\n"
        "  - Boats leave the harbour\n"
        "  - prompt: Gulls circle the masts\n"
        "    scenario: establishing\n"
    )

    job = load_job(str(job_file))

    assert job.job_id == "harbour"
    assert job.segment_prompts == ["Boats leave the harbour", "Gulls circle the masts"]
    assert job.scenarios == ["", "establishing"]
    assert job.policy == FailurePolicy.BEST_EFFORT
    assert job.transition.type == TransitionType.DISSOLVE
    assert job.transition.duration == 0.75


def test_load_job_rejects_missing_file(tmp_path) -> None:
    with pytest.raises(ClipChainError):
        load_job(str(tmp_path / "missing.yaml"))


def test_show_unknown_job_fails(config_file, capsys) -> None:
    code = main(["show", "nothing-here", "--config", str(config_file)])

    assert code == 1
    assert "no manifest" in capsys.readouterr().err


def test_show_prints_manifest(config_file, tmp_path, capsys) -> None:
    JobStore(tmp_path / "output").create("lighthouse")

    code = main(["show", "lighthouse", "--config", str(config_file)])

    assert code == 0
    manifest = json.loads(capsys.readouterr().out)
    assert manifest["job_id"] == "lighthouse"
    assert manifest["stage"] == "created"


def test_run_with_missing_job_file_fails(config_file, tmp_path, capsys) -> None:
    code = main(["run", str(tmp_path / "missing.yaml"), "--config", str(config_file)])

    assert code == 1
    assert "Job file not found" in capsys.readouterr().err


def test_transition_shorthand_uses_default_duration(tmp_path) -> None:
    job_file = tmp_path / "cove.yaml"
    job_file.write_text("image_prompt: A quiet cove\ntransition: wipe\nsegments:\n  - Tide rolls in\n")

    job = load_job(str(job_file))

    assert job.transition.type == TransitionType.WIPE
    assert job.transition.duration == 0.5


@pytest.mark.parametrize(
    "extra",
    [
        "duration: 8.0\n",
        "duration: 0\n",
        "transition: [fade]\n",
        "transition:\n  type: fade\n  duration: long\n",
        "transition: spin\n",
        "seed: lucky\n",
    ],
)
def test_invalid_job_fields_are_rejected(tmp_path, extra) -> None:
    job_file = tmp_path / "cove.yaml"
    job_file.write_text("image_prompt: A quiet cove\nsegments:\n  - Tide rolls in\n" + extra)

    with pytest.raises(ValidationError):
        load_job(str(job_file))
