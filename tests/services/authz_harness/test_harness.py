from __future__ import annotations

import json
import logging

import pytest

from pgroup_audit.authz_harness.errors import ResolutionError
from pgroup_audit.authz_harness.models import Classification, Finding, Operation
from pgroup_audit.authz_harness.reporter import EXIT_INCOMPLETE
from pgroup_audit.authz_harness.runner import AuthzHarness


RUN_ID = "audit_test_run"


def _build(platform, profile, artifact) -> AuthzHarness:
    return AuthzHarness.build(profile, run_id=RUN_ID, artifact=artifact, session_factory=platform.session_factory)


def _classifications(cases) -> dict[tuple[str, str, str], Classification]:
    return {case.key(): case.classification for case in cases}


def test_clean_platform_yields_clean_report(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = _build(platform, profile, artifact).run()

    assert result.exit_code == 0
    assert result.report["verdict"] == "CLEAN"
    # 2 groups x (1 sentinel write + 4 reads + 3 probe writes)
    assert result.report["summary"]["total"] == 16
    assert result.report["summary"]["PASS"] == 16
    assert result.report_path.is_absolute()
    assert result.report_path == tmp_path.resolve() / "runs" / "pgroup-audit" / RUN_ID / "authz" / "report.json"
    stored = json.loads(result.report_path.read_text(encoding="utf-8"))
    assert stored["run_id"] == RUN_ID
    session = (tmp_path / "runs" / "pgroup-audit" / RUN_ID / "session.jsonl").read_text(encoding="utf-8")
    assert "RUN_REPORT_WRITTEN" in session


def test_matrix_covers_every_identity_and_operation(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = _build(platform, profile, artifact).run()

    keys = {case.key() for case in result.matrix.cases}
    identities = ["w@node3", "x@node1", "y@node2", "z@node1"]
    for group in ("deal-a", "deal-b"):
        for identity in identities:
            for operation in Operation:
                assert (group, identity, operation.value) in keys


def test_same_node_non_member_read_is_denied_and_passes(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = _build(platform, profile, artifact).run()

    case = next(item for item in result.matrix.cases if item.key() == ("deal-a", "z@node1", "READ"))
    assert case.expected.value == "DENY"
    assert all(item.kind.value == "DENIED" for item in case.observations)
    assert case.classification == Classification.PASS


def test_member_reads_return_the_group_sentinel(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = _build(platform, profile, artifact).run()

    sentinel = result.matrix.sentinels["deal-a"]
    case = next(item for item in result.matrix.cases if item.key() == ("deal-a", "y@node2", "READ"))
    assert [item.value for item in case.observations] == [sentinel, sentinel]


def test_node_level_access_is_reported_as_breach(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    platform.node_level_access = True
    result = _build(platform, profile, artifact).run()

    assert result.exit_code == 1
    assert result.report["verdict"] == "NOT_CLEAN"
    breach_keys = {(item["group"], item["identity"], item["operation"]) for item in result.report["breaches"]}
    assert ("deal-a", "z@node1", "READ") in breach_keys
    assert ("deal-a", "z@node1", "WRITE") in breach_keys
    assert result.report["cases"][0]["classification"] == "BREACH"


def test_intermittent_denial_is_non_deterministic(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    platform.flaky_readers.add(("deal-a", "y@node2"))
    result = _build(platform, profile, artifact).run()

    flagged = [case for case in result.matrix.cases if case.finding == Finding.NON_DETERMINISTIC]
    assert [case.key() for case in flagged] == [("deal-a", "y@node2", "READ")]
    assert result.exit_code == 1


def test_group_that_never_confirms_generates_no_cases(
    platform, profile_factory, artifact, tmp_path, monkeypatch, caplog
) -> None:
    monkeypatch.chdir(tmp_path)
    caplog.set_level(logging.WARNING, logger="pgroup_audit.authz_harness")
    profile = profile_factory()
    profile.wiring.ready_timeout_seconds = 0
    platform.never_ready.add("deal-b")
    result = _build(platform, profile, artifact).run()

    assert {case.group_name for case in result.matrix.cases} == {"deal-a"}
    excluded = result.report["excluded_groups"]
    assert [item["group"] for item in excluded] == ["deal-b"]
    assert excluded[0]["status"] == "FAILED"
    assert result.exit_code == 0
    messages = [record.getMessage() for record in caplog.records]
    assert any(message.startswith("group failed") and "deal-b" in message for message in messages)
    assert not any(message.startswith("BREACH") for message in messages)


def test_unreachable_node_excludes_its_identities_and_groups(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    platform.unreachable.add("node3")
    result = _build(platform, profile, artifact).run()

    assert result.report["excluded_identities"] == [
        {"identity": "w@node3", "node": "node3", "labels": {}, "reason": "NODE_UNREACHABLE"}
    ]
    assert [item["group"] for item in result.report["excluded_groups"]] == ["deal-b"]
    assert result.report["excluded_groups"][0]["status"] == "NOT_CREATED"
    assert all(case.identity_name != "w@node3" for case in result.matrix.cases)
    # 1 sentinel write + 3 reads + 2 probe writes
    assert result.report["summary"]["total"] == 6
    assert result.exit_code == 0


def test_unresolvable_identity_aborts_the_run(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    platform.unknown_keys.add("y@node2")
    with pytest.raises(ResolutionError):
        _build(platform, profile, artifact).run()
    assert "pgroup_createGroup" not in platform.methods()


def test_sentinels_are_unique_per_group(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    harness = _build(platform, profile, artifact)
    result = harness.run()

    sentinels = result.matrix.sentinels
    assert len(set(sentinels.values())) == len(sentinels) == 2
    for group in ("deal-a", "deal-b"):
        for identity in ("w@node3", "x@node1", "y@node2", "z@node1"):
            assert harness.orchestrator.probe_value(group, identity) not in set(sentinels.values())


def test_sentinel_write_is_committed_before_any_read(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = _build(platform, profile, artifact).run()

    for run in result.matrix.runs:
        group_id = run.group.id
        sentinel = str(result.matrix.sentinels[run.name])
        calls = platform.calls
        write_index = next(
            index
            for index, (_, method, params) in enumerate(calls)
            if method == "pgroup_sendTransaction"
            and params[0].get("group") == group_id
            and sentinel in params[0].get("input", {}).values()
        )
        read_indices = [
            index
            for index, (_, method, params) in enumerate(calls)
            if method == "pgroup_call" and params[0]["group"] == group_id
        ]
        assert read_indices
        assert min(read_indices) > write_index


def test_rerun_reproduces_classifications(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    harness = _build(platform, profile, artifact)
    first = harness.run()
    groups_created = platform.methods().count("pgroup_createGroup")

    harness.topology.discover()
    second = harness.orchestrator.rerun(first.matrix)
    harness.reporter.classify_all(second)

    assert _classifications(second.cases) == _classifications(first.matrix.cases)
    assert second.sentinels == first.matrix.sentinels
    assert platform.methods().count("pgroup_createGroup") == groups_created


def test_total_outage_is_incomplete_not_clean(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    platform.unreachable.update({"node1", "node2", "node3"})
    result = _build(platform, profile, artifact).run()

    assert result.report["verdict"] == "INCOMPLETE"
    assert result.report["clean"] is False
    assert result.report["summary"]["total"] == 0
    assert result.exit_code == EXIT_INCOMPLETE
    assert len(result.report["excluded_identities"]) == 4
    assert "pgroup_call" not in platform.methods()


def test_identity_labels_reach_the_report(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = _build(platform, profile, artifact).run()

    stored = json.loads(result.report_path.read_text(encoding="utf-8"))
    labels = {item["identity"]: item["labels"] for item in stored["identities"]}
    assert labels["x@node1"] == {"role": "lender"}
    assert labels["y@node2"] == {"role": "borrower"}
    assert labels["z@node1"] == {}


def test_node_sessions_are_closed_after_the_run(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    platform.unreachable.add("node3")
    _build(platform, profile, artifact).run()

    assert platform.sessions_opened == 3
    assert platform.sessions_closed == 3


def test_sessions_are_closed_when_the_run_aborts(platform, profile, artifact, tmp_path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    platform.unknown_keys.add("x@node1")
    with pytest.raises(ResolutionError):
        _build(platform, profile, artifact).run()
    assert platform.sessions_closed == platform.sessions_opened == 3
