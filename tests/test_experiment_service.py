from __future__ import annotations

import asyncio
import unittest

from experiment_gate.core.lifecycle import LifecyclePhase
from experiment_gate.experiments.models import (
    AddToRecommendationsAction,
    CustomAction,
    ExperimentActionType,
    ExperimentState,
    ExperimentStorageState,
)
from tests.stubs import Harness, SequenceRoll


def _prompt(curated_key: str | None = None, curated_list: list[str] | None = None) -> dict:
    command: dict = {"text": "Show me"}
    if curated_key is not None:
        command["curatedExtensionsKey"] = curated_key
        command["curatedExtensionsList"] = curated_list or []
    return {"type": "Prompt", "properties": {"prompt": "Try it?", "commands": [command]}}


class ExperimentEvaluationTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_disabled_experiment_is_no_run(self) -> None:
        h = Harness([{"id": "exp1", "enabled": False, "condition": {"userProbability": 1}}])
        service = await h.start()

        experiment = await service.get_experiment_by_id("exp1")
        self.assertEqual(experiment.state, ExperimentState.NO_RUN)
        self.assertFalse(experiment.enabled)
        stored = await h.repository.get_state("exp1")
        self.assertEqual(stored.state, ExperimentState.NO_RUN)
        self.assertEqual(h.roll.calls, 0)

    async def test_enabled_without_condition_runs(self) -> None:
        h = Harness([{"id": "exp1", "enabled": True}])
        service = await h.start()

        experiment = await service.get_experiment_by_id("exp1")
        self.assertEqual(experiment.state, ExperimentState.RUN)
        stored = await h.repository.get_state("exp1")
        self.assertEqual(stored, ExperimentStorageState(enabled=True, state=ExperimentState.RUN))

    async def test_probability_one_always_runs(self) -> None:
        h = Harness(
            [{"id": "exp1", "enabled": True, "condition": {"userProbability": 1}}],
            roll=SequenceRoll(0.9999),
        )
        service = await h.start()
        self.assertEqual((await service.get_experiment_by_id("exp1")).state, ExperimentState.RUN)

    async def test_probability_zero_never_runs(self) -> None:
        h = Harness(
            [{"id": "exp1", "enabled": True, "condition": {"userProbability": 0}}],
            roll=SequenceRoll(0.0),
        )
        service = await h.start()
        self.assertEqual((await service.get_experiment_by_id("exp1")).state, ExperimentState.NO_RUN)

    async def test_insiders_only_on_stable_is_no_run(self) -> None:
        h = Harness(
            [
                {
                    "id": "exp1",
                    "enabled": True,
                    "condition": {"insidersOnly": True, "userProbability": 1, "displayLanguage": "en"},
                }
            ],
            app_quality="stable",
        )
        service = await h.start()
        self.assertEqual((await service.get_experiment_by_id("exp1")).state, ExperimentState.NO_RUN)

    async def test_insiders_only_on_insider_runs(self) -> None:
        h = Harness(
            [{"id": "exp1", "enabled": True, "condition": {"insidersOnly": True}}],
            app_quality="insider",
        )
        service = await h.start()
        self.assertEqual((await service.get_experiment_by_id("exp1")).state, ExperimentState.RUN)

    async def test_display_language_gate(self) -> None:
        h = Harness(
            [
                {"id": "en", "enabled": True, "condition": {"displayLanguage": "en-US"}},
                {"id": "fr", "enabled": True, "condition": {"displayLanguage": "fr-FR"}},
            ],
            display_language="en-GB",
        )
        service = await h.start()
        self.assertEqual((await service.get_experiment_by_id("en")).state, ExperimentState.RUN)
        self.assertEqual((await service.get_experiment_by_id("fr")).state, ExperimentState.NO_RUN)

    async def test_installed_extensions_gate(self) -> None:
        condition = {"installedExtensions": {"includes": ["A"], "excludes": ["B"]}}
        h = Harness(
            [
                {"id": "both", "enabled": True, "condition": condition},
            ],
            installed=["a", "b"],
        )
        service = await h.start()
        self.assertEqual((await service.get_experiment_by_id("both")).state, ExperimentState.NO_RUN)

        h = Harness([{"id": "only-a", "enabled": True, "condition": condition}], installed=["a"])
        service = await h.start()
        self.assertEqual((await service.get_experiment_by_id("only-a")).state, ExperimentState.RUN)

    async def test_persisted_decision_is_not_reevaluated(self) -> None:
        h = Harness(
            [{"id": "exp1", "enabled": True, "condition": {"userProbability": 1}}],
            roll=SequenceRoll(0.0),
        )
        await h.repository.save_state(
            "exp1", ExperimentStorageState(enabled=True, state=ExperimentState.NO_RUN)
        )
        service = await h.start()

        self.assertEqual((await service.get_experiment_by_id("exp1")).state, ExperimentState.NO_RUN)
        self.assertEqual(h.roll.calls, 0)

    async def test_completed_state_is_kept(self) -> None:
        h = Harness([{"id": "exp1", "enabled": True}])
        await h.repository.mark_completed("exp1")
        service = await h.start()

        experiment = await service.get_experiment_by_id("exp1")
        self.assertEqual(experiment.state, ExperimentState.COMPLETE)
        stored = await h.repository.get_state("exp1")
        self.assertEqual(stored.state, ExperimentState.COMPLETE)
        self.assertTrue(stored.enabled)

    async def test_unknown_action_type_falls_back_to_custom(self) -> None:
        h = Harness([{"id": "exp1", "enabled": True, "action": {"type": "Fancy", "properties": {"x": 1}}}])
        service = await h.start()

        experiment = await service.get_experiment_by_id("exp1")
        self.assertIsInstance(experiment.action, CustomAction)
        self.assertEqual(experiment.action.type, ExperimentActionType.CUSTOM)
        self.assertEqual(experiment.action.properties, {"x": 1})

    async def test_malformed_entry_is_skipped(self) -> None:
        h = Harness([{"enabled": True}, "nope", {"id": "ok", "enabled": True}])
        service = await h.start()
        self.assertIsNotNone(await service.get_experiment_by_id("ok"))
        self.assertEqual(len(h.telemetry.events[0][1]), 1)

    async def test_non_string_display_language_is_ignored(self) -> None:
        h = Harness([{"id": "x", "enabled": True, "condition": {"displayLanguage": 5}}])
        service = await h.start()

        experiment = await service.get_experiment_by_id("x")
        self.assertIsNotNone(experiment)
        self.assertEqual(experiment.state, ExperimentState.RUN)
        self.assertEqual(await h.repository.get_all_ids(), ["x"])

    async def test_non_numeric_min_edit_count_disables_file_edit_gate(self) -> None:
        h = Harness(
            [
                {
                    "id": "x",
                    "enabled": True,
                    "condition": {"fileEdits": {"minEditCount": "3"}, "userProbability": "high"},
                }
            ]
        )
        service = await h.start()

        self.assertEqual((await service.get_experiment_by_id("x")).state, ExperimentState.RUN)
        self.assertEqual(service.pending_trackers, [])
        self.assertEqual(h.save_events.listener_count, 0)

    async def test_non_string_id_is_skipped(self) -> None:
        h = Harness([{"id": 7, "enabled": True}, {"id": "ok", "enabled": True}])
        await h.start()

        self.assertEqual([x["id"] for x in h.telemetry.events[0][1]], ["ok"])
        self.assertEqual(await h.repository.get_all_ids(), ["ok"])

    async def test_telemetry_record_lists_processed_experiments(self) -> None:
        h = Harness(
            [
                {"id": "a", "enabled": True},
                {"id": "b", "enabled": False},
            ]
        )
        await h.start()
        self.assertEqual(len(h.telemetry.events), 1)
        name, payload = h.telemetry.events[0]
        self.assertEqual(name, "experiments")
        self.assertEqual(
            payload,
            [
                {"id": "a", "enabled": True, "state": int(ExperimentState.RUN)},
                {"id": "b", "enabled": False, "state": int(ExperimentState.NO_RUN)},
            ],
        )


class ExperimentRegistryTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_queries_wait_for_eventually_phase(self) -> None:
        h = Harness([{"id": "exp1", "enabled": True}])
        h.service.initialize()

        pending = asyncio.ensure_future(h.service.get_experiment_by_id("exp1"))
        await asyncio.sleep(0)
        self.assertFalse(pending.done())
        self.assertEqual(h.fetcher.calls, 0)

        h.lifecycle.set_phase(LifecyclePhase.EVENTUALLY)
        experiment = await pending
        self.assertEqual(experiment.id, "exp1")
        self.assertEqual(h.fetcher.calls, 1)

    async def test_initialize_runs_once(self) -> None:
        h = Harness([{"id": "exp1", "enabled": True}])
        await h.start()
        await h.service.initialize()
        await h.service.get_eligible_experiments_by_type(ExperimentActionType.CUSTOM)
        self.assertEqual(h.fetcher.calls, 1)

    async def test_lookup_by_id_is_case_insensitive_and_missing_returns_none(self) -> None:
        h = Harness([{"id": "MyExp", "enabled": True}])
        service = await h.start()
        self.assertEqual((await service.get_experiment_by_id("myexp")).id, "MyExp")
        self.assertIsNone(await service.get_experiment_by_id("missing"))

    async def test_eligible_by_type(self) -> None:
        h = Harness(
            [
                {"id": "plain", "enabled": True},
                {"id": "custom", "enabled": True, "action": {"type": "Custom", "properties": {}}},
                {"id": "prompt", "enabled": True, "action": _prompt()},
                {"id": "recs", "enabled": True, "action": {"type": "AddToRecommendations", "properties": {"recommendations": ["pub.ext"]}}},
                {"id": "off", "enabled": False, "action": _prompt()},
                {"id": "missed", "enabled": True, "condition": {"userProbability": 0}},
            ]
        )
        service = await h.start()

        custom = await service.get_eligible_experiments_by_type(ExperimentActionType.CUSTOM)
        self.assertEqual([x.id for x in custom], ["plain", "custom"])

        prompts = await service.get_eligible_experiments_by_type(ExperimentActionType.PROMPT)
        self.assertEqual([x.id for x in prompts], ["prompt"])

        recs = await service.get_eligible_experiments_by_type(ExperimentActionType.ADD_TO_RECOMMENDATIONS)
        self.assertEqual([x.id for x in recs], ["recs"])
        self.assertIsInstance(recs[0].action, AddToRecommendationsAction)
        self.assertEqual(recs[0].action.recommendations, ["pub.ext"])

    async def test_curated_list_lookup(self) -> None:
        h = Harness(
            [
                {"id": "no-run", "enabled": True, "condition": {"userProbability": 0}, "action": _prompt("python", ["ms.x"])},
                {"id": "curated", "enabled": True, "action": _prompt("python", ["ms-python.python", "ms.pylance"])},
            ]
        )
        service = await h.start()

        self.assertEqual(
            await service.get_curated_extensions_list("python"),
            ["ms-python.python", "ms.pylance"],
        )
        self.assertEqual(await service.get_curated_extensions_list("unknown"), [])

    async def test_mark_as_completed_does_not_touch_memory(self) -> None:
        h = Harness([{"id": "exp1", "enabled": True}])
        service = await h.start()

        await service.mark_as_completed("exp1")
        await service.mark_as_completed("exp1")
        await service.mark_as_completed("never-evaluated")

        self.assertEqual((await service.get_experiment_by_id("exp1")).state, ExperimentState.RUN)
        self.assertEqual((await h.repository.get_state("exp1")).state, ExperimentState.COMPLETE)
        self.assertEqual((await h.repository.get_state("never-evaluated")).state, ExperimentState.COMPLETE)

    async def test_prompt_run_notifies_once(self) -> None:
        h = Harness(
            [
                {"id": "prompt", "enabled": True, "action": _prompt()},
                {"id": "custom", "enabled": True},
            ]
        )
        await h.start()
        self.assertEqual(h.enabled, ["prompt"])

    async def test_listener_can_query_during_build(self) -> None:
        h = Harness([{"id": "prompt", "enabled": True, "action": _prompt()}])
        seen = []

        async def _listener(experiment) -> None:
            found = await h.service.get_experiment_by_id(experiment.id)
            seen.append(found.state)

        h.service.on_experiment_enabled(_listener)
        await h.start()
        self.assertEqual(seen, [ExperimentState.RUN])

    async def test_build_failure_still_resolves_queries(self) -> None:
        h = Harness([{"id": "exp1", "enabled": True}])

        async def _broken_fetch():
            raise RuntimeError("storage down")

        h.fetcher.fetch = _broken_fetch  # type: ignore[assignment]
        service = await h.start()
        self.assertIsNone(await service.get_experiment_by_id("exp1"))
        self.assertEqual(await service.get_curated_extensions_list("x"), [])


class ExperimentRefreshTestCase(unittest.IsolatedAsyncioTestCase):
    async def test_refresh_prunes_stale_ids_and_stores_registry(self) -> None:
        h = Harness(
            [
                {"id": "Kept", "enabled": True},
                {"id": "disabled-now", "enabled": False},
            ]
        )
        await h.repository.save_all_ids(["kept", "gone", "disabled-now"])
        for experiment_id in ("kept", "gone", "disabled-now"):
            await h.repository.save_state(
                experiment_id, ExperimentStorageState(enabled=True, state=ExperimentState.RUN)
            )

        await h.start()

        self.assertIsNone(await h.repository.find_state("gone"))
        self.assertEqual(await h.repository.get_all_ids(), ["kept"])
        # 已下线的实验按最新配置重新写入（disabled -> NoRun）
        disabled = await h.repository.get_state("disabled-now")
        self.assertEqual(disabled, ExperimentStorageState(enabled=False, state=ExperimentState.NO_RUN))
        self.assertEqual((await h.repository.get_state("kept")).state, ExperimentState.RUN)

    async def test_unavailable_config_rebuilds_from_storage(self) -> None:
        h = Harness(None)
        await h.repository.save_all_ids(["a", "b", "missing"])
        await h.repository.save_state("a", ExperimentStorageState(enabled=True, state=ExperimentState.RUN))
        await h.repository.save_state("b", ExperimentStorageState(enabled=True, state=ExperimentState.COMPLETE))

        service = await h.start()

        self.assertEqual((await service.get_experiment_by_id("a")).state, ExperimentState.RUN)
        self.assertEqual((await service.get_experiment_by_id("b")).state, ExperimentState.COMPLETE)
        self.assertIsNone(await service.get_experiment_by_id("missing"))
        self.assertEqual(h.telemetry.events, [])
        # 不可用时不清理任何状态
        self.assertEqual(await h.repository.get_all_ids(), ["a", "b", "missing"])


if __name__ == "__main__":
    unittest.main()
