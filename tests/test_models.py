"""
Tests for the deployment record model.
"""

import pytest
from pydantic import ValidationError

from controlplane.models import (
    TERMINAL_STEP,
    DeploymentRecord,
    StageRun,
    StageStatus,
)


@pytest.fixture
def record():
    return DeploymentRecord(environment="DEV", region_code="WEEU")


class TestDeploymentRecord:
    """Tests for DeploymentRecord fields and aliases."""

    def test_new_record_starts_at_step_zero(self, record):
        assert record.step == 0
        assert not record.is_complete
        assert record.keyvault is None

    def test_persisted_keys_use_aliases(self, record):
        """Remote state identifiers keep their established upper-case names."""
        record.set("REMOTE_STATE_SA", "devweeutfstate042")
        record.set("state_subscription", "sub-state")

        doc = record.to_document()
        assert doc["REMOTE_STATE_SA"] == "devweeutfstate042"
        assert doc["STATE_SUBSCRIPTION"] == "sub-state"
        assert "remote_state_sa" not in doc

    def test_get_by_alias_and_name(self, record):
        record.set("REMOTE_STATE_RG", "DEV-WEEU-SAP_LIBRARY")
        assert record.get("REMOTE_STATE_RG") == "DEV-WEEU-SAP_LIBRARY"
        assert record.get("remote_state_rg") == "DEV-WEEU-SAP_LIBRARY"

    def test_get_unknown_key_is_none(self, record):
        assert record.get("no_such_key") is None

    def test_set_unknown_key_raises(self, record):
        with pytest.raises(KeyError):
            record.set("no_such_key", "x")

    def test_from_document_drops_unknown_keys(self, record):
        doc = record.to_document()
        doc["written_by_hand"] = "yes"
        doc["keyvault"] = "DEVWEEUDEP00user"

        restored = DeploymentRecord.from_document(doc)
        assert restored.keyvault == "DEVWEEUDEP00user"
        assert restored.environment == "DEV"


class TestStepCounter:
    """The step counter only moves forward and stays within range."""

    def test_advance(self, record):
        record.advance_to(1)
        record.advance_to(3)
        assert record.step == 3

    def test_advance_to_same_step(self, record):
        record.advance_to(2)
        record.advance_to(2)
        assert record.step == 2

    def test_decrease_rejected(self, record):
        record.advance_to(3)
        with pytest.raises(ValueError, match="may not decrease"):
            record.advance_to(1)
        assert record.step == 3

    def test_set_step_goes_through_advance(self, record):
        record.set("step", 4)
        with pytest.raises(ValueError):
            record.set("step", 2)

    def test_beyond_terminal_rejected(self, record):
        with pytest.raises(ValueError):
            record.advance_to(TERMINAL_STEP + 1)

    def test_out_of_range_document_rejected(self):
        with pytest.raises(ValidationError):
            DeploymentRecord.from_document({"environment": "DEV", "region_code": "WEEU", "step": 9})

    def test_terminal_step_is_complete(self, record):
        record.advance_to(TERMINAL_STEP)
        assert record.is_complete


class TestStageRun:
    """Tests for stage history entries."""

    def test_lifecycle(self):
        run = StageRun()
        run.mark_running()
        assert run.status == StageStatus.RUNNING
        assert run.attempts == 1

        run.mark_completed()
        assert run.status == StageStatus.COMPLETED
        assert run.duration_seconds is not None
        assert run.duration_seconds >= 0

    def test_failure_then_retry(self):
        run = StageRun()
        run.mark_running()
        run.mark_failed("installer exited 1")
        assert run.error == "installer exited 1"

        run.mark_running()
        assert run.attempts == 2
        assert run.error is None

    def test_stage_run_created_once(self, record):
        first = record.stage_run("bootstrap-deployer")
        assert record.stage_run("bootstrap-deployer") is first
