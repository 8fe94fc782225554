"""Tests for the RuleEngine."""

import threading

import pytest

from ccdpin.engine import NOT_SET, EventSource, RuleEngine
from ccdpin.errors import DanglingRuleReference, InvalidCore, StoreError
from ccdpin.events import EventKind
from ccdpin.models import CoreGroup, MonitoredProcessRule, ProcessInfo
from ccdpin.sampler import ProcessSampler
from ccdpin.store import RuleStore


@pytest.fixture
def seeded_stores(config_store, rule_store):
    config_store.save(
        {
            "ccdA": CoreGroup.create("ccdA", [0, 1, 2, 3]),
            "ccdB": CoreGroup.create("ccdB", [4, 5]),
        },
        None,
    )
    rule_store.save({"game.exe": MonitoredProcessRule("game.exe", "ccdA")})
    return config_store, rule_store


@pytest.fixture
def engine(fake_sampler, fake_setter, seeded_stores):
    config_store, rule_store = seeded_stores
    return RuleEngine(fake_sampler, fake_setter, config_store, rule_store, auto_apply=True)


def record(engine):
    seen = {kind: [] for kind in EventKind}
    for kind in EventKind:
        engine.events.subscribe(kind, seen[kind].append)
    return seen


class TestLoading:
    """Tests for construction and reload."""

    def test_loads_stores(self, engine):
        assert set(engine.core_groups) == {"ccdA", "ccdB"}
        assert engine.rules == {"game.exe": MonitoredProcessRule("game.exe", "ccdA")}
        assert engine.default_ccd is None
        assert engine.auto_apply is True

    def test_state_is_read_only(self, engine):
        with pytest.raises(TypeError):
            engine.rules["x"] = MonitoredProcessRule("x", "ccdA")

    def test_reload_picks_up_external_changes(self, engine, rule_store, config_store):
        rule_store.save({"obs64": MonitoredProcessRule("obs64", "ccdB")})
        config_store.save(dict(engine.core_groups), "ccdB")

        engine.reload()

        assert list(engine.rules) == ["obs64"]
        assert engine.default_ccd == "ccdB"

    def test_mutation_during_reload_is_not_lost(self, fake_sampler, fake_setter, seeded_stores):
        config_store, _ = seeded_stores
        loading = threading.Event()
        release = threading.Event()

        class SlowRuleStore(RuleStore):
            def load_rules(self):
                rules = super().load_rules()
                if self.block:
                    loading.set()
                    release.wait(5)
                return rules

        rule_store = SlowRuleStore(config_store.path.with_name("slow_rules.json"))
        rule_store.block = False
        engine = RuleEngine(fake_sampler, fake_setter, config_store, rule_store)
        rule_store.block = True

        reloader = threading.Thread(target=engine.reload)
        reloader.start()
        assert loading.wait(5)
        adder = threading.Thread(target=engine.add_rule, args=("game.exe", "ccdA"))
        adder.start()
        release.set()
        reloader.join(5)
        adder.join(5)

        assert "game.exe" in engine.rules
        assert "game.exe" in RuleStore(rule_store.path).load_rules()

    def test_subscribes_to_sampler(self, fake_sampler, engine):
        assert fake_sampler.events.listener_count(EventKind.STARTED) == 1
        engine.close()
        assert fake_sampler.events.listener_count(EventKind.STARTED) == 0

    def test_event_sources(self, fake_sampler):
        assert isinstance(fake_sampler, EventSource)
        assert isinstance(ProcessSampler(snapshot_source=lambda previous: {}), EventSource)
        assert not isinstance(object(), EventSource)


class TestProcessStarted:
    """Tests for the event-driven path."""

    def test_rule_match_applies_group_mask(self, fake_sampler, fake_setter, engine):
        seen = record(engine)

        fake_sampler.events.publish(EventKind.STARTED, ProcessInfo(10, "game.exe", 0xFF))

        assert fake_setter.calls == [("pid", 10, 0b1111)]
        assert fake_setter.table[10][1] == 0b1111
        assert seen[EventKind.STARTED] == [ProcessInfo(10, "game.exe", 0xFF)]
        applied = seen[EventKind.RULE_APPLIED]
        assert len(applied) == 1
        assert applied[0].process_name == "game.exe"
        assert applied[0].ccd_name == "ccdA"
        assert applied[0].success

    def test_unmatched_uses_default_ccd(self, fake_sampler, fake_setter, engine):
        engine.set_default_ccd("ccdB")
        seen = record(engine)

        fake_sampler.events.publish(EventKind.STARTED, ProcessInfo(20, "browser", 0xFF))

        assert fake_setter.calls == [("pid", 20, 0b110000)]
        assert seen[EventKind.STARTED] == []
        assert [r.ccd_name for r in seen[EventKind.RULE_APPLIED]] == ["ccdB"]

    def test_unmatched_without_default_is_ignored(self, fake_sampler, fake_setter, engine):
        seen = record(engine)

        fake_sampler.events.publish(EventKind.STARTED, ProcessInfo(20, "browser", 0xFF))

        assert fake_setter.calls == []
        assert seen[EventKind.STARTED] == []
        assert seen[EventKind.RULE_APPLIED] == []

    def test_auto_apply_off_never_writes(self, fake_sampler, fake_setter, engine):
        engine.set_default_ccd("ccdB")
        engine.auto_apply = False
        seen = record(engine)

        fake_sampler.events.publish(EventKind.STARTED, ProcessInfo(10, "game.exe", 0xFF))
        fake_sampler.events.publish(EventKind.STARTED, ProcessInfo(20, "browser", 0xFF))

        assert fake_setter.calls == []
        assert seen[EventKind.STARTED] == [ProcessInfo(10, "game.exe", 0xFF)]

    def test_dangling_rule_is_skipped(self, fake_sampler, fake_setter, engine, caplog):
        engine.add_rule("editor", "gone")
        seen = record(engine)

        fake_sampler.events.publish(EventKind.STARTED, ProcessInfo(30, "editor", 0xFF))

        assert fake_setter.calls == []
        assert seen[EventKind.STARTED] == [ProcessInfo(30, "editor", 0xFF)]
        assert "gone" in caplog.text
        # The rule is reported, not repaired
        assert engine.rules["editor"].ccd_name == "gone"

    def test_dangling_default_is_skipped(self, fake_sampler, fake_setter, engine):
        engine.set_default_ccd("gone")

        fake_sampler.events.publish(EventKind.STARTED, ProcessInfo(20, "browser", 0xFF))

        assert fake_setter.calls == []

    def test_failed_write_is_reported(self, fake_sampler, fake_setter, engine):
        seen = record(engine)

        fake_sampler.events.publish(EventKind.STARTED, ProcessInfo(999, "game.exe", 0xFF))

        applied = seen[EventKind.RULE_APPLIED]
        assert len(applied) == 1
        assert not applied[0].success
        assert "999" in applied[0].message

    def test_ended_and_changed_filtered_to_rules(self, fake_sampler, engine):
        seen = record(engine)

        fake_sampler.events.publish(EventKind.ENDED, ProcessInfo(10, "game.exe", 1))
        fake_sampler.events.publish(EventKind.ENDED, ProcessInfo(20, "browser", 1))
        fake_sampler.events.publish(EventKind.AFFINITY_CHANGED, ProcessInfo(11, "game.exe", 3))
        fake_sampler.events.publish(EventKind.AFFINITY_CHANGED, ProcessInfo(30, "editor", 3))

        assert seen[EventKind.ENDED] == [ProcessInfo(10, "game.exe", 1)]
        assert seen[EventKind.AFFINITY_CHANGED] == [ProcessInfo(11, "game.exe", 3)]


class TestMutations:
    """Tests for rule and core group mutations."""

    def test_add_rule_persists(self, engine, rule_store):
        engine.add_rule("obs64", "ccdB")

        assert engine.rules["obs64"] == MonitoredProcessRule("obs64", "ccdB")
        assert "obs64" in rule_store.load_rules()

    def test_add_rule_replaces_mapping(self, engine):
        before = engine.rules
        engine.add_rule("obs64", "ccdB")

        assert "obs64" not in before
        assert engine.rules is not before

    def test_add_rule_rejects_empty_name(self, engine):
        with pytest.raises(ValueError):
            engine.add_rule("", "ccdA")

    def test_remove_rule(self, engine, rule_store):
        assert engine.remove_rule("game.exe") is True
        assert engine.rules == {}
        assert rule_store.load_rules() == {}

    def test_remove_missing_rule(self, engine):
        assert engine.remove_rule("nope") is False

    def test_failed_save_leaves_memory_untouched(self, fake_sampler, fake_setter, seeded_stores, tmp_path):
        config_store, _ = seeded_stores
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        broken = RuleStore(blocker / "rules.json")
        engine = RuleEngine(fake_sampler, fake_setter, config_store, broken)

        with pytest.raises(StoreError):
            engine.add_rule("game.exe", "ccdA")

        assert engine.rules == {}

    def test_upsert_core_group(self, engine, config_store):
        group = engine.upsert_core_group("ccdC", [9, 8])

        assert group.cores == (8, 9)
        assert engine.core_groups["ccdC"] == group
        assert "ccdC" in config_store.load_core_groups()

    def test_upsert_rejects_invalid_cores(self, engine):
        with pytest.raises(InvalidCore):
            engine.upsert_core_group("ccdC", [64])
        assert "ccdC" not in engine.core_groups

    def test_delete_core_group_leaves_dangling_rule(self, engine):
        assert engine.delete_core_group("ccdA") is True

        assert engine.dangling_rules() == [MonitoredProcessRule("game.exe", "ccdA")]
        with pytest.raises(DanglingRuleReference):
            engine.resolve_mask("ccdA")

    def test_delete_missing_core_group(self, engine):
        assert engine.delete_core_group("nope") is False

    def test_set_default_ccd_persists(self, engine, config_store):
        engine.set_default_ccd("ccdB")
        assert config_store.load_default_ccd() == "ccdB"

        engine.set_default_ccd(None)
        assert engine.default_ccd is None
        assert config_store.load_default_ccd() is None


class TestBulkApply:
    """Tests for apply_all_rules_now and apply_default_to_others."""

    def test_applies_rules_and_default(self, fake_setter, engine):
        engine.set_default_ccd("ccdB")

        report = engine.apply_all_rules_now()

        assert [r.process_name for r in report.rules] == ["game.exe"]
        assert report.rules[0].success
        assert fake_setter.table[10][1] == 0b1111
        assert fake_setter.table[11][1] == 0b1111
        assert fake_setter.table[20][1] == 0b110000
        assert fake_setter.table[30][1] == 0b110000
        assert (report.default_success, report.default_failed) == (2, 0)

    def test_default_excludes_rule_names(self, fake_setter, engine):
        engine.set_default_ccd("ccdB")

        engine.apply_default_to_others()

        assert fake_setter.table[10][1] == 0xFF
        assert fake_setter.table[11][1] == 0xFF

    def test_no_default_is_noop(self, fake_setter, engine):
        assert engine.apply_default_to_others() == (0, 0)
        assert all(call[0] != "pid" for call in fake_setter.calls)

    def test_idempotent(self, fake_setter, engine):
        engine.set_default_ccd("ccdB")

        engine.apply_all_rules_now()
        first = {pid: fake_setter.get_affinity(pid) for pid, _ in fake_setter.list_running()}
        engine.apply_all_rules_now()
        second = {pid: fake_setter.get_affinity(pid) for pid, _ in fake_setter.list_running()}

        assert first == second

    def test_rule_for_missing_process_reports_failure(self, fake_setter, engine):
        engine.add_rule("not-running", "ccdB")

        report = engine.apply_all_rules_now()

        assert [r.process_name for r in report.failed_rules] == ["not-running"]

    def test_dangling_rules_skipped(self, fake_setter, engine):
        engine.add_rule("editor", "gone")

        report = engine.apply_all_rules_now()

        assert [r.process_name for r in report.rules] == ["game.exe"]
        assert fake_setter.table[30][1] == 0xFF

    def test_publishes_rule_applied(self, engine):
        seen = record(engine)
        engine.apply_all_rules_now()
        assert len(seen[EventKind.RULE_APPLIED]) == 1


class TestDescribe:
    """Tests for the monitored process list rows."""

    def test_rows(self, fake_setter, engine):
        engine.add_rule("editor", "gone")
        engine.set_default_ccd("ccdB")

        rows = engine.describe()

        assert [(r.process_name, r.ccd_name, r.affinity_text, r.is_default) for r in rows] == [
            ("editor", "gone", NOT_SET, False),
            ("game.exe", "ccdA", "0-7", False),
            ("Default", "ccdB", "4-5", True),
        ]

    def test_default_not_set(self, engine):
        default = engine.describe()[-1]
        assert default.is_default
        assert default.ccd_name == NOT_SET
        assert default.affinity_text == NOT_SET
