"""Unit tests for the inventory document and InventoryStore."""

from datetime import datetime, timezone
from pathlib import Path

import pytest
import yaml

from cddns.inventory import (
    DeclaredRecord,
    Inventory,
    InventoryError,
    InventoryStore,
    RecordKind,
    get_file_mtime,
)


class TestDeclaredRecord:
    """Tests for validation of individual inventory entries."""

    def test_defaults_to_current_ip(self) -> None:
        record = DeclaredRecord.create("example.com", "home")

        assert record.uses_current_ip
        assert record.kind is None

    def test_literal_target_infers_kind(self) -> None:
        record = DeclaredRecord.create("example.com", "home", target="2001:db8::1")

        assert record.kind is RecordKind.AAAA
        assert not record.uses_current_ip

    def test_literal_target_is_canonicalized(self) -> None:
        record = DeclaredRecord.create("example.com", "home", "AAAA", "2001:DB8:0::1")

        assert record.target == "2001:db8::1"

    def test_kind_is_case_insensitive(self) -> None:
        assert DeclaredRecord.create("example.com", "home", "aaaa").kind is RecordKind.AAAA

    @pytest.mark.parametrize(
        "zone,record,kind,target",
        [
            ("", "home", "A", None),
            ("example.com", "", "A", None),
            ("example.com", "home", "CNAME", None),
            ("example.com", "home", "A", "not-an-ip"),
            ("example.com", "home", "A", "2001:db8::1"),
            ("example.com", "home", "AAAA", "203.0.113.5"),
        ],
    )
    def test_rejects_invalid_entries(self, zone, record, kind, target) -> None:
        with pytest.raises(InventoryError):
            DeclaredRecord.create(zone, record, kind, target)

    def test_label(self) -> None:
        assert DeclaredRecord.create("example.com", "home", "A").label == "example.com/home (A)"
        assert DeclaredRecord.create("example.com", "home").label == "example.com/home"


class TestInventoryDocument:
    """Tests for parsing and rendering inventory documents."""

    def test_parses_full_layout(self) -> None:
        data = {
            "version": 1,
            "generated_at": "2026-10-18T09:30:00+00:00",
            "records": [
                {"zone": "example.com", "record": "home", "kind": "A", "target": "current"},
                {"zone": "example.com", "record": "vpn", "target": "198.51.100.7"},
            ],
        }

        inventory = Inventory.from_document(data)

        assert len(inventory) == 2
        assert inventory.generated_at == datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)
        assert list(inventory)[1].kind is RecordKind.A

    def test_parses_compact_layout(self) -> None:
        data = {
            "example.com": ["home.example.com", "vpn.example.com"],
            "9aad55f2e0a8d9373badd4361227cabe": "5dba009abaa3ba5d3a624e87b37f941a",
        }

        inventory = Inventory.from_document(data)

        assert [(r.zone, r.record) for r in inventory] == [
            ("example.com", "home.example.com"),
            ("example.com", "vpn.example.com"),
            ("9aad55f2e0a8d9373badd4361227cabe", "5dba009abaa3ba5d3a624e87b37f941a"),
        ]
        assert all(r.uses_current_ip and r.kind is None for r in inventory)

    def test_empty_document_is_empty_inventory(self) -> None:
        assert Inventory.from_document(None).is_empty()

    def test_duplicates_are_dropped(self) -> None:
        data = {"example.com": ["home", "home", "vpn"]}

        inventory = Inventory.from_document(data)

        assert [r.record for r in inventory] == ["home", "vpn"]

    @pytest.mark.parametrize(
        "data",
        [
            ["example.com"],
            {"version": 2, "records": []},
            {"records": {"zone": "example.com"}},
            {"records": ["example.com/home"]},
            {"example.com": {"record": "home"}},
            {"records": [], "generated_at": "yesterday"},
        ],
    )
    def test_rejects_malformed_documents(self, data) -> None:
        with pytest.raises(InventoryError):
            Inventory.from_document(data)

    def test_without_preserves_order(self) -> None:
        a, b, c = (DeclaredRecord.create("example.com", name) for name in ("a", "b", "c"))
        inventory = Inventory((a, b, c))

        assert list(inventory.without([b])) == [a, c]
        assert list(inventory) == [a, b, c]

    def test_render_groups_by_zone(self) -> None:
        inventory = Inventory(
            (
                DeclaredRecord.create("example.com", "home", "A"),
                DeclaredRecord.create("example.org", "vpn", target="2001:db8::1"),
                DeclaredRecord.create("example.com", "www"),
            )
        )

        rendered = inventory.render()

        assert rendered == (
            "example.com:\n"
            "  - home [A] -> current\n"
            "  - www [A/AAAA] -> current\n"
            "---\n"
            "example.org:\n"
            "  - vpn [AAAA] -> 2001:db8::1"
        )


class TestInventoryStoreLoad:
    """Tests for InventoryStore load functionality."""

    def test_load_missing_file_raises(self, tmp_path: Path) -> None:
        store = InventoryStore(str(tmp_path / "nonexistent" / "inventory.yaml"))

        assert not store.exists()
        with pytest.raises(InventoryError, match="was not found"):
            store.load()

    def test_load_invalid_yaml_raises(self, tmp_path: Path) -> None:
        inventory_file = tmp_path / "inventory.yaml"
        inventory_file.write_text("example.com: [home\n")

        with pytest.raises(InventoryError, match="not valid YAML"):
            InventoryStore(str(inventory_file)).load()

    def test_load_compact_file(self, tmp_path: Path) -> None:
        inventory_file = tmp_path / "inventory.yaml"
        inventory_file.write_text("example.com:\n  - home.example.com\n")

        inventory = InventoryStore(str(inventory_file)).load()

        assert list(inventory) == [DeclaredRecord.create("example.com", "home.example.com")]


class TestInventoryStoreSave:
    """Tests for InventoryStore save functionality."""

    def test_save_creates_parent_directories(self, tmp_path: Path) -> None:
        inventory_file = tmp_path / "nested" / "path" / "inventory.yaml"
        store = InventoryStore(str(inventory_file))

        store.save(Inventory((DeclaredRecord.create("example.com", "home"),)))

        assert inventory_file.exists()

    def test_save_writes_full_layout(self, tmp_path: Path) -> None:
        inventory_file = tmp_path / "inventory.yaml"
        store = InventoryStore(str(inventory_file))
        generated_at = datetime(2026, 10, 18, 9, 30, tzinfo=timezone.utc)

        store.save(
            Inventory((DeclaredRecord.create("example.com", "home", "A"),), generated_at=generated_at)
        )

        assert yaml.safe_load(inventory_file.read_text()) == {
            "version": 1,
            "generated_at": "2026-10-18T09:30:00+00:00",
            "records": [{"zone": "example.com", "record": "home", "kind": "A", "target": "current"}],
        }

    def test_save_leaves_no_temp_file(self, tmp_path: Path) -> None:
        inventory_file = tmp_path / "inventory.yaml"
        store = InventoryStore(str(inventory_file))

        store.save(Inventory())

        assert inventory_file.exists()
        assert not (tmp_path / "inventory.yaml.tmp").exists()

    def test_saved_compact_inventory_loads_back_equal(self, tmp_path: Path) -> None:
        inventory_file = tmp_path / "inventory.yaml"
        inventory_file.write_text("example.com:\n  - home\n  - vpn\n")
        store = InventoryStore(str(inventory_file))

        original = store.load()
        store.save(original)

        assert list(store.load()) == list(original)


def test_get_file_mtime_missing_file(tmp_path: Path) -> None:
    assert get_file_mtime(tmp_path / "missing.yaml") == 0.0


def test_get_file_mtime_existing_file(tmp_path: Path) -> None:
    path = tmp_path / "inventory.yaml"
    path.write_text("{}")

    assert get_file_mtime(path) > 0
