"""
End-to-end tests for sync, plan and apply against the in-memory API client.
"""
import json

import pytest
import yaml

from pvesync.artifacts.generator import HEADER
from pvesync.errors import (
    ArtifactParseError,
    PartialDiscoveryError,
    ReconciliationConflict,
    TransportError,
    UnsupportedOperationError,
)
from pvesync.model.resources import Identity, ResourceKind
from pvesync.orchestrator import Mutation, SyncOrchestrator

VM100 = Identity(ResourceKind.VM, "pve", 100)
VM101 = Identity(ResourceKind.VM, "pve", 101)


@pytest.fixture
def orchestrator(context, fake_client, store):
    return SyncOrchestrator(context, fake_client, store)


def _edit(context, relative: str, old: str, new: str) -> None:
    path = context.artifact_dir / relative
    content = path.read_text(encoding="utf-8")
    assert old in content
    path.write_text(content.replace(old, new), encoding="utf-8")


class TestSync:
    @pytest.mark.asyncio
    async def test_first_sync_writes_tree(self, orchestrator, context):
        report = await orchestrator.sync()

        assert report.snapshot.sequence == 1
        assert report.artifacts.written == ["nodes/pve.yaml", "vms/pve/100.yaml"]
        assert (context.artifact_dir / "vms" / "pve" / "100.yaml").read_text().startswith(HEADER)
        json.dumps(report.to_dict())

    @pytest.mark.asyncio
    async def test_changed_and_added_vm_touch_only_their_files(self, orchestrator, context, fake_client):
        await orchestrator.sync()
        vm_file = context.artifact_dir / "vms" / "pve" / "100.yaml"
        before = vm_file.read_text(encoding="utf-8")

        fake_client.vms["pve"][100]["config"]["cores"] = 4
        fake_client.add_vm("pve", 101, "db", status="stopped")
        report = await orchestrator.sync()

        assert report.diff.added == (VM101,)
        assert report.diff.removed == ()
        change = report.diff.change_for(VM100)
        assert [(d.field, d.old, d.new) for d in change.deltas] == [("cores", 2, 4)]
        assert report.snapshot.sequence == 2
        assert report.artifacts.written == ["vms/pve/100.yaml", "vms/pve/101.yaml"]
        assert report.artifacts.removed == []
        assert vm_file.read_text(encoding="utf-8") == before.replace("cores: 2", "cores: 4")
        assert yaml.safe_load((context.artifact_dir / "vms" / "pve" / "101.yaml").read_text())["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_repeated_sync_is_idempotent(self, orchestrator):
        await orchestrator.sync()
        report = await orchestrator.sync()
        assert report.diff.is_empty
        assert not report.artifacts.changed
        assert report.snapshot.sequence == 2

    @pytest.mark.asyncio
    async def test_hand_added_fields_survive_sync(self, orchestrator, context):
        await orchestrator.sync()
        path = context.artifact_dir / "vms" / "pve" / "100.yaml"
        path.write_text(path.read_text() + "owner: platform-team\n")

        first = await orchestrator.sync()
        assert first.artifacts.written == ["vms/pve/100.yaml"]
        assert "owner: platform-team" in path.read_text()

        second = await orchestrator.sync()
        assert not second.artifacts.changed
        assert "owner: platform-team" in path.read_text()

    @pytest.mark.asyncio
    async def test_removed_vm_removes_its_file(self, orchestrator, context, fake_client):
        await orchestrator.sync()
        fake_client.vms["pve"].pop(100)

        report = await orchestrator.sync()

        assert report.diff.removed == (VM100,)
        assert report.artifacts.removed == ["vms/pve/100.yaml"]

    @pytest.mark.asyncio
    async def test_partial_sync(self, orchestrator, context, fake_client):
        fake_client.add_node("pve2").add_vm("pve2", 300, "db")
        await orchestrator.sync()
        fake_client.fail_nodes["pve2"] = TransportError("no route to host")

        with pytest.raises(PartialDiscoveryError):
            await orchestrator.sync()

        report = await orchestrator.sync(allow_partial=True)
        assert report.partial
        assert report.skipped_nodes == {"pve2": "no route to host"}
        assert (context.artifact_dir / "vms" / "pve2" / "300.yaml").exists()

    @pytest.mark.asyncio
    async def test_terraform_export(self, context, fake_client, store):
        orchestrator = SyncOrchestrator(context.model_copy(update={"render_terraform": True}), fake_client, store)
        report = await orchestrator.sync()
        assert "terraform/vm_pve_100.tf" in report.artifacts.written


class TestPlan:
    @pytest.mark.asyncio
    async def test_plan_before_first_sync(self, orchestrator, store):
        report = await orchestrator.plan()
        assert not report.artifacts_present
        assert report.drift.is_empty
        assert VM100 in report.remote.added
        assert store.head() == 0

    @pytest.mark.asyncio
    async def test_plan_reports_artifact_drift(self, orchestrator, context):
        await orchestrator.sync()
        _edit(context, "vms/pve/100.yaml", "cores: 2", "cores: 8")

        report = await orchestrator.plan(refresh=False)

        assert report.remote is None
        assert report.drift.changed_identities() == (VM100,)
        assert report.has_changes
        json.dumps(report.to_dict())

    @pytest.mark.asyncio
    async def test_plan_reports_conflicts_without_raising(self, orchestrator, context, fake_client, store):
        await orchestrator.sync()
        _edit(context, "vms/pve/100.yaml", "cores: 2", "cores: 8")
        fake_client.vms["pve"][100]["config"]["cores"] = 4

        report = await orchestrator.plan()

        assert [c.identity for c in report.conflicts] == [VM100]
        assert store.head() == 1

    @pytest.mark.asyncio
    async def test_plan_with_unreachable_node(self, orchestrator, fake_client):
        fake_client.add_node("pve2")
        fake_client.fail_nodes["pve2"] = TransportError("no route to host")

        report = await orchestrator.plan()

        assert report.skipped_nodes == {"pve2": "no route to host"}
        assert {i.node for i in report.remote.added} == {"pve"}

    @pytest.mark.asyncio
    async def test_malformed_artifact_fails_plan(self, orchestrator, context):
        await orchestrator.sync()
        (context.artifact_dir / "vms" / "pve" / "100.yaml").write_text("kind: vm\nnode: pve\nvmid: 100\ncores: lots\n")
        with pytest.raises(ArtifactParseError):
            await orchestrator.plan(refresh=False)


class TestApply:
    @pytest.mark.asyncio
    async def test_nothing_to_apply_without_artifacts(self, orchestrator, fake_client):
        report = await orchestrator.apply()
        assert report.mutations == []
        assert fake_client.mutations() == []

    @pytest.mark.asyncio
    async def test_dry_run_lists_mutations_only(self, orchestrator, context, fake_client, store):
        await orchestrator.sync()
        _edit(context, "vms/pve/100.yaml", "cores: 2", "cores: 8")

        report = await orchestrator.apply(dry_run=True)

        assert [m.describe() for m in report.mutations] == ["update vm/pve/100 (cores)"]
        assert report.mutations[0].payload == {"cores": 8}
        assert fake_client.mutations() == []
        assert store.head() == 1

    @pytest.mark.asyncio
    async def test_apply_update_polls_and_resyncs(self, orchestrator, context, fake_client, store):
        await orchestrator.sync()
        _edit(context, "vms/pve/100.yaml", "cores: 2", "cores: 8")

        report = await orchestrator.apply()

        assert fake_client.mutations() == [("update", "vm/pve/100", {"cores": 8})]
        assert report.success
        assert len(report.tasks) == 1
        assert report.mutations[0].upid == report.tasks[0].task.upid
        assert report.sync.snapshot.sequence == 2
        assert store.current()[VM100].cores == 8
        audit = store.snapshot(2).audit
        assert audit[0] == "update vm/pve/100 (cores)"
        assert "outcome=succeeded" in audit[1]

    @pytest.mark.asyncio
    async def test_apply_status_change(self, orchestrator, context, fake_client, store):
        await orchestrator.sync()
        _edit(context, "vms/pve/100.yaml", "status: running", "status: stopped")

        report = await orchestrator.apply()

        assert [m.describe() for m in report.mutations] == ["status vm/pve/100 -> stopped"]
        assert fake_client.mutations() == [("status", "vm/pve/100", "stopped")]
        assert store.current()[VM100].status.value == "stopped"

    @pytest.mark.asyncio
    async def test_apply_create_and_delete(self, orchestrator, context, fake_client, store):
        fake_client.add_vm("pve", 101, "old", status="stopped")
        await orchestrator.sync()
        (context.artifact_dir / "vms" / "pve" / "101.yaml").unlink()
        document = {
            "kind": "vm", "node": "pve", "vmid": 150, "name": "new",
            "cores": 1, "memory": 1024 * 1024 * 1024, "status": "stopped",
        }
        (context.artifact_dir / "vms" / "pve" / "150.yaml").write_text(HEADER + yaml.safe_dump(document))

        report = await orchestrator.apply()

        assert [m.action for m in report.mutations] == ["create", "delete"]
        assert [c[0] for c in fake_client.mutations()] == ["create", "delete"]
        current = store.current()
        assert Identity(ResourceKind.VM, "pve", 150) in current
        assert VM101 not in current
        assert report.sync.diff.added == (Identity(ResourceKind.VM, "pve", 150),)

    @pytest.mark.asyncio
    async def test_creating_running_guest_also_starts_it(self, orchestrator, context, fake_client):
        await orchestrator.sync()
        document = {"kind": "vm", "node": "pve", "vmid": 150, "name": "new", "memory": 1024 * 1024 * 1024}
        document["status"] = "running"
        (context.artifact_dir / "vms" / "pve" / "150.yaml").write_text(HEADER + yaml.safe_dump(document))

        report = await orchestrator.apply(dry_run=True)

        assert [(m.action, str(m.identity)) for m in report.mutations] == [
            ("create", "vm/pve/150"),
            ("status", "vm/pve/150"),
        ]

    @pytest.mark.asyncio
    async def test_node_edits_are_rejected(self, orchestrator, context):
        await orchestrator.sync()
        _edit(context, "nodes/pve.yaml", "cpus: 8", "cpus: 64")
        with pytest.raises(UnsupportedOperationError):
            await orchestrator.apply(dry_run=True)

    @pytest.mark.asyncio
    async def test_conflict_under_manual_policy(self, orchestrator, context, fake_client, store):
        await orchestrator.sync()
        _edit(context, "vms/pve/100.yaml", "cores: 2", "cores: 8")
        fake_client.vms["pve"][100]["config"]["cores"] = 4

        with pytest.raises(ReconciliationConflict) as exc_info:
            await orchestrator.apply()

        assert exc_info.value.context["sequence"] == 1
        assert fake_client.mutations() == []
        assert store.head() == 1

    @pytest.mark.asyncio
    async def test_conflict_policies(self, orchestrator, context, fake_client):
        await orchestrator.sync()
        _edit(context, "vms/pve/100.yaml", "cores: 2", "cores: 8")
        fake_client.vms["pve"][100]["config"]["cores"] = 4

        remote_wins = await orchestrator.apply(dry_run=True, policy="preferRemote")
        local_wins = await orchestrator.apply(dry_run=True, policy="preferLocal")

        assert remote_wins.mutations == []
        assert local_wins.mutations[0].payload == {"cores": 8}

    @pytest.mark.asyncio
    async def test_failed_task_stops_later_phases(self, orchestrator, context, fake_client, store):
        await orchestrator.sync()
        _edit(context, "vms/pve/100.yaml", "cores: 2", "cores: 8")
        (context.artifact_dir / "vms" / "pve" / "100.yaml").write_text(
            (context.artifact_dir / "vms" / "pve" / "100.yaml").read_text().replace("status: running", "status: stopped")
        )

        async def _failing(node, upid):
            return {"status": "stopped", "exitstatus": "unable to lock config"}

        fake_client.get_task_status = _failing
        report = await orchestrator.apply()

        assert not report.success
        assert [c[0] for c in fake_client.mutations()] == ["update"]
        assert report.sync is not None
        assert "unable to lock config" in store.snapshot(2).audit[-1]
        assert store.current()[VM100].cores == 8
        pending = yaml.safe_load((context.artifact_dir / "vms" / "pve" / "100.yaml").read_text())
        assert pending["status"] == "stopped"

    @pytest.mark.asyncio
    async def test_apply_requires_complete_discovery(self, orchestrator, context, fake_client):
        await orchestrator.sync()
        _edit(context, "vms/pve/100.yaml", "cores: 2", "cores: 8")
        fake_client.add_node("pve2")
        fake_client.fail_nodes["pve2"] = TransportError("no route to host")

        with pytest.raises(PartialDiscoveryError):
            await orchestrator.apply()
        assert fake_client.mutations() == []


class TestMutation:
    def test_phase_ordering(self):
        storage = Identity(ResourceKind.STORAGE, "pve", "local:1")
        mutations = [
            Mutation("delete", VM100),
            Mutation("delete", storage),
            Mutation("status", VM100, {"status": "running"}),
            Mutation("create", VM101),
        ]
        ordered = sorted(mutations, key=Mutation.sort_key)
        assert [(m.action, m.identity.kind) for m in ordered] == [
            ("create", ResourceKind.VM),
            ("status", ResourceKind.VM),
            ("delete", ResourceKind.STORAGE),
            ("delete", ResourceKind.VM),
        ]


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_and_show(self, orchestrator, fake_client):
        await orchestrator.sync()
        fake_client.vms["pve"][100]["config"]["cores"] = 4
        await orchestrator.sync()

        snapshots = await orchestrator.history()
        assert [s.sequence for s in snapshots] == [2, 1]
        assert [s.sequence for s in await orchestrator.history(limit=1)] == [2]
        shown = await orchestrator.show(2)
        assert shown.diff.changed_identities() == (VM100,)
