"""
Tests for the step sequencer - resumable execution of the bootstrap.
"""

import pytest

from controlplane.errors import ExitCode, StageFailed
from controlplane.models import StageStatus
from controlplane.sequencer import FORCE_RESET_STEP, TRANSITIONS, StepSequencer


def installer_scripts(runner):
    return [p for p in runner.programs if p.endswith(".sh")]


def resume_at(ctx, step, **values):
    for key, value in values.items():
        ctx.persist(key, value)
    ctx.record.advance_to(step)
    ctx.store.save("step", ctx.record)
    return ctx


class TestTransitionTable:

    def test_linear_table(self):
        assert [(t.step, t.next_step) for t in TRANSITIONS.values()] == [
            (0, 1), (1, 2), (2, 3), (3, 4), (4, 5),
        ]

    def test_stage_triggers_match_steps(self):
        for step, transition in TRANSITIONS.items():
            assert transition.stage.trigger == step

    def test_force_reset_rule(self, make_context, config):
        config.force_reset = True
        sequencer = StepSequencer(make_context())

        assert sequencer.next_step_after(0) == FORCE_RESET_STEP
        assert sequencer.next_step_after(1) == 2

    def test_no_force_reset(self, make_context):
        assert StepSequencer(make_context()).next_step_after(0) == 1


class TestRun:
    """Tests for StepSequencer.run()."""

    def test_full_run(self, make_context, successful_runner, capsys):
        ctx = make_context()

        assert StepSequencer(ctx).run() == 5

        assert installer_scripts(successful_runner) == [
            "install_deployer.sh",
            "install_library.sh",
            "installer.sh",
            "installer.sh",
        ]
        stored = ctx.store.read()
        assert stored.step == 5
        assert stored.keyvault == "DEVWEEUDEP00user"
        assert stored.remote_state_sa == "devweeutfstate042"
        assert all(run.status == StageStatus.COMPLETED for run in stored.stages.values())
        assert len(stored.stages) == 5
        assert "Progress Indicator: 100% done" in capsys.readouterr().out

    def test_generic_defaults_not_persisted(self, make_context, successful_runner, store):
        store.store_dir.mkdir(parents=True, exist_ok=True)
        store.generic_path.write_text("REMOTE_STATE_RG=from-generic\nclient_id=generic-client\n")
        ctx = make_context()
        ctx.params.spn_id = None

        StepSequencer(ctx).run()

        stored = store.read()
        assert stored.client_id is None
        assert stored.remote_state_rg == "DEV-WEEU-SAP_LIBRARY"

    def test_resume_skips_completed_stages(self, make_context, successful_runner):
        ctx = resume_at(
            make_context(), 3,
            keyvault="DEVWEEUDEP00user",
            REMOTE_STATE_SA="devweeutfstate042",
        )

        assert StepSequencer(ctx).run() == 5
        assert installer_scripts(successful_runner) == ["installer.sh", "installer.sh"]
        assert successful_runner.calls_to("install_deployer.sh") == []

    def test_already_complete(self, make_context, fake_runner):
        ctx = resume_at(make_context(), 5)

        assert StepSequencer(ctx).run() == 5
        assert fake_runner.calls == []

    def test_force_reset_jumps_to_deployer_migration(self, make_context, successful_runner, config, params):
        config.force_reset = True
        params.storage_account = "devweeutfstate042"
        ctx = make_context()

        assert StepSequencer(ctx).run() == 5

        assert installer_scripts(successful_runner) == [
            "install_deployer.sh",
            "installer.sh",
            "installer.sh",
        ]
        assert "bootstrap-library" not in ctx.store.read().stages

    def test_ado_progress(self, make_context, successful_runner, config, capsys):
        config.ado_build_id = "1234"
        ctx = resume_at(make_context(), 4, keyvault="DEVWEEUDEP00user", REMOTE_STATE_SA="sa")

        StepSequencer(ctx).run()
        assert "##vso[task.setprogress value=100;]Progress Indicator" in capsys.readouterr().out


class TestFailure:
    """A failing stage halts the run without advancing the step."""

    def test_failure_halts(self, make_context, successful_runner):
        successful_runner.on("install_library.sh", returncode=1)
        ctx = make_context()

        with pytest.raises(StageFailed) as exc:
            StepSequencer(ctx).run()

        assert exc.value.exit_code == ExitCode.LIBRARY_BOOTSTRAP_FAILED
        assert installer_scripts(successful_runner) == ["install_deployer.sh", "install_library.sh"]

        stored = ctx.store.read()
        assert stored.step == 2
        assert stored.stages["bootstrap-library"].status == StageStatus.FAILED
        assert stored.stages["bootstrap-deployer"].status == StageStatus.COMPLETED
        assert ctx.store.error_marker_path.read_text().strip() == "Bootstrapping of the SAP Library failed"

    def test_rerun_retries_failed_stage_only(self, make_context, successful_runner, store):
        successful_runner.on("installer.sh", "sap_deployer", returncode=1)
        with pytest.raises(StageFailed) as exc:
            StepSequencer(make_context()).run()
        assert exc.value.exit_code == ExitCode.DEPLOYER_MIGRATION_FAILED
        assert store.load("step") == 3

        successful_runner.on("installer.sh", "sap_deployer", returncode=0)
        successful_runner.calls.clear()
        ctx = make_context()

        assert StepSequencer(ctx).run() == 5
        assert installer_scripts(successful_runner) == ["installer.sh", "installer.sh"]
        assert not store.error_marker_path.exists()
        assert store.read().stages["migrate-deployer-state"].attempts == 2

    def test_step_never_decreases(self, make_context, successful_runner):
        ctx = make_context()
        steps = []
        original_save = ctx.store.save

        def tracking_save(key, record):
            original_save(key, record)
            steps.append(ctx.store.load("step"))

        ctx.store.save = tracking_save
        StepSequencer(ctx).run()

        assert steps == sorted(steps)
        assert steps[-1] == 5
