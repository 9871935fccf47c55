"""Tests for the instance registry and port allocator."""

import json
from pathlib import Path

from clawnest.store import ConfigSummary, InstanceMeta, InstanceState, InstanceStore


def _meta(instance_id: str, port: int, engine: str = "process") -> InstanceMeta:
    return InstanceMeta(id=instance_id, engine=engine, port=port)


class TestInstanceMeta:
    def test_record_uses_wire_names(self) -> None:
        meta = InstanceMeta(
            id="bot1",
            engine="docker",
            port=18790,
            backend_handle="abc123",
            config=ConfigSummary(model_id="claude-opus-4-6", channel="telegram"),
        )
        record = meta.to_record()

        assert record["backendHandle"] == "abc123"
        assert record["config"] == {"modelId": "claude-opus-4-6", "channel": "telegram"}
        assert record["status"] == "stopped"
        assert "createdAt" in record

    def test_record_round_trip(self) -> None:
        meta = _meta("bot1", 18790)
        meta.status = InstanceState.RUNNING
        assert InstanceMeta.model_validate(meta.to_record()) == meta


class TestInstanceStore:
    def test_empty_when_file_missing(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        assert store.all() == {}
        assert store.get("bot1") is None

    def test_corrupt_file_reads_as_empty(self, tmp_path: Path) -> None:
        (tmp_path / "instances.json").write_text("{not json")
        store = InstanceStore(tmp_path)
        assert store.all() == {}
        assert store.next_available_port() == 18790

    def test_save_get_delete(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        store.save(_meta("bot1", 18790))

        loaded = store.get("bot1")
        assert loaded is not None
        assert loaded.port == 18790

        on_disk = json.loads((tmp_path / "instances.json").read_text())
        assert on_disk["bot1"]["engine"] == "process"

        store.delete("bot1")
        assert store.get("bot1") is None

    def test_delete_unknown_is_noop(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        store.delete("nope")
        assert not store.path.exists()

    def test_save_replaces_record(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        meta = _meta("bot1", 18790)
        store.save(meta)
        meta.status = InstanceState.RUNNING
        store.save(meta)
        assert store.get("bot1").status == InstanceState.RUNNING
        assert len(store.all()) == 1

    def test_malformed_record_is_skipped(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        store.save(_meta("good", 18790))
        data = json.loads(store.path.read_text())
        data["bad"] = {"engine": "docker"}
        store.path.write_text(json.dumps(data))

        assert list(store.all()) == ["good"]

    def test_ids_for_engine(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        store.save(_meta("a", 18790, "docker"))
        store.save(_meta("b", 18791, "process"))
        store.save(_meta("c", 18792, "docker"))

        assert sorted(store.ids_for_engine("docker")) == ["a", "c"]
        assert store.ids_for_engine("process") == ["b"]

    def test_instance_dir(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        assert store.instance_dir("bot1") == tmp_path / "instances" / "bot1"


class TestPortAllocation:
    def test_first_port_is_base(self, tmp_path: Path) -> None:
        assert InstanceStore(tmp_path).next_available_port() == 18790

    def test_skips_used_ports(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        store.save(_meta("a", 18790))
        store.save(_meta("b", 18791))
        store.save(_meta("c", 18793))
        assert store.next_available_port() == 18792

    def test_freed_port_is_reused(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        store.save(_meta("a", 18790))
        store.save(_meta("b", 18791))
        store.delete("a")
        assert store.next_available_port() == 18790

    def test_nothing_is_reserved(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path)
        assert store.next_available_port() == store.next_available_port()

    def test_custom_base(self, tmp_path: Path) -> None:
        store = InstanceStore(tmp_path, base_port=20000)
        store.save(_meta("a", 20000))
        assert store.next_available_port() == 20001
        assert store.next_available_port(base_port=30000) == 30000
