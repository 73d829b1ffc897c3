"""
Tests for the Resource Model and ResourceSet.
"""
import copy

import pytest
from pydantic import ValidationError

from conftest import make_container, make_disk, make_node, make_vm, make_volume
from pvesync.errors import InvalidResourceSetError
from pvesync.model.resource_set import ResourceSet
from pvesync.model.resources import (
    Attachment,
    Identity,
    ResourceKind,
    Task,
    TaskStatus,
    VirtualMachine,
    resource_from_record,
)


class TestIdentity:
    def test_string_round_trip(self):
        identity = Identity(ResourceKind.STORAGE, "pve", "nfs:100/vm-100-disk-0.qcow2")
        assert str(identity) == "storage/pve/nfs:100/vm-100-disk-0.qcow2"
        assert Identity.parse(str(identity)) == identity

    def test_guest_ids_parse_as_int(self):
        assert Identity.parse("vm/pve/100") == Identity(ResourceKind.VM, "pve", 100)

    def test_invalid_identity(self):
        with pytest.raises(ValueError):
            Identity.parse("bogus/pve/1")

    def test_sort_order_is_kind_node_then_numeric_id(self):
        identities = [
            Identity(ResourceKind.VM, "pve", 1000),
            Identity(ResourceKind.STORAGE, "pve", "a"),
            Identity(ResourceKind.VM, "pve", 99),
            Identity(ResourceKind.NODE, "pve", "pve"),
        ]
        ordered = sorted(identities, key=Identity.sort_key)
        assert [str(i) for i in ordered] == ["node/pve/pve", "vm/pve/99", "vm/pve/1000", "storage/pve/a"]


class TestResources:
    def test_resources_are_frozen(self):
        vm = make_vm()
        with pytest.raises(ValidationError):
            vm.cores = 8

    def test_maps_cannot_be_changed_in_place(self):
        source = {"onboot": 1}
        vm = make_vm(extensions=source)
        shared = ResourceSet([make_node(), vm])
        source["onboot"] = 0

        with pytest.raises(TypeError):
            vm.extensions["onboot"] = 0
        with pytest.raises(TypeError):
            vm.annotations.update(owner="ops")
        with pytest.raises(TypeError):
            make_vm().metrics["uptime"] = 1
        assert shared[vm.identity].extensions == {"onboot": 1}
        assert copy.deepcopy(vm) == vm
        assert vm.model_dump()["extensions"] == {"onboot": 1}

    def test_disks_are_sorted_by_slot(self):
        vm = make_vm(disks=(make_disk("scsi1"), make_disk("scsi0")))
        assert [d.slot for d in vm.disks] == ["scsi0", "scsi1"]

    def test_duplicate_disk_slot_rejected(self):
        with pytest.raises(ValidationError):
            make_vm(disks=(make_disk("scsi0"), make_disk("scsi0")))

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            VirtualMachine(node="pve", vmid=100, cpu_units=4)

    def test_attachment_must_be_a_guest(self):
        with pytest.raises(ValidationError):
            Attachment(kind=ResourceKind.NODE, vmid=1)

    def test_significant_fields_exclude_metrics(self):
        vm = make_vm(metrics={"uptime": 10})
        again = make_vm(metrics={"uptime": 99})
        assert vm.significant() == again.significant()
        assert "uptime" not in vm.significant()

    def test_promoted_extension_becomes_significant(self):
        vm = make_vm(extensions={"onboot": 1})
        assert vm.significant(("onboot",))["extensions.onboot"] == 1
        assert "extensions.onboot" not in vm.significant()

    def test_container_swap_is_significant(self):
        assert "swap" in make_container(swap=256).significant()

    def test_record_round_trip_drops_annotations(self):
        vm = make_vm(disks=(make_disk(),), annotations={"owner": "ops"})
        rebuilt = resource_from_record(vm.to_record())
        assert rebuilt == vm.model_copy(update={"annotations": {}})

    def test_record_without_kind(self):
        with pytest.raises(ValueError):
            resource_from_record({"name": "pve"})

    def test_task_audit_line(self):
        task = Task(upid="UPID:pve:1", node="pve", type="qmstart", target="100",
                    status=TaskStatus.SUCCEEDED, exit_status="OK")
        assert task.finished
        assert task.audit_line() == "UPID:pve:1 qmstart 100 succeeded OK"


class TestResourceSet:
    def test_order_is_independent_of_input_order(self):
        resources = [make_volume(), make_vm(101), make_node(), make_vm(100)]
        assert list(ResourceSet(resources)) == list(ResourceSet(reversed(resources)))
        assert ResourceSet(resources) == ResourceSet(reversed(resources))

    def test_duplicate_identity_rejected(self):
        with pytest.raises(InvalidResourceSetError) as exc_info:
            ResourceSet([make_node(), make_vm(100), make_vm(100, cores=4)])
        assert exc_info.value.context["identities"] == ["vm/pve/100"]

    def test_same_vmid_on_different_kinds_is_allowed(self):
        resources = ResourceSet([make_node(), make_vm(100), make_container(100)])
        assert len(resources) == 3

    def test_validate_rejects_dangling_node(self):
        resources = ResourceSet([make_node("pve"), make_vm(100, node="ghost")])
        assert resources.dangling() == [Identity(ResourceKind.VM, "ghost", 100)]
        with pytest.raises(InvalidResourceSetError):
            resources.validate()

    def test_for_nodes_with_resources(self):
        stored = ResourceSet([make_node("a"), make_node("b"), make_vm(100, node="a"), make_vm(200, node="b")])
        merged = stored.for_nodes(["b"]).with_resources([make_node("a"), make_vm(100, node="a", cores=8)])
        assert merged[Identity(ResourceKind.VM, "a", 100)].cores == 8
        assert Identity(ResourceKind.VM, "b", 200) in merged

    def test_with_detached_volumes(self):
        resources = ResourceSet([make_node(), make_volume(vmid=100)])
        detached = resources.with_detached_volumes()
        volume = detached[Identity(ResourceKind.STORAGE, "pve", "local-lvm:vm-100-disk-0")]
        assert volume.attachment is None
        assert volume.detached is True
        assert resources.with_detached_volumes() is not resources

    def test_attached_volume_untouched(self):
        resources = ResourceSet([make_node(), make_vm(100), make_volume(vmid=100)])
        assert resources.with_detached_volumes() is resources

    def test_records_round_trip(self):
        resources = ResourceSet([make_node(), make_vm(100), make_container(), make_volume()])
        assert ResourceSet.from_records(resources.to_records()) == resources
