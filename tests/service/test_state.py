"""Tests for the persisted state store."""

import json
import os
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from splitroute.exceptions import PersistenceFailed
from splitroute.service.state import PersistedState, PidFile, StateStore


def _sample_state() -> PersistedState:
    return PersistedState(
        vpn_connected=True,
        routes_active=True,
        active_services={"telegram": True, "youtube": False},
        last_gateway="192.168.1.1",
        last_check=datetime(2026, 10, 16, 9, 30, 12, 345678, tzinfo=timezone.utc),
        start_time=datetime(2026, 10, 16, 8, 0, 0, tzinfo=timezone.utc),
    )


class TestStateStore:
    def test_round_trip(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        state = _sample_state()

        store.save(state)
        loaded = store.load()

        assert loaded == state

    def test_missing_file_gives_defaults(self, tmp_path):
        state = StateStore(tmp_path / "absent" / "state.json").load()

        assert state.vpn_connected is False
        assert state.routes_active is False
        assert state.active_services == {}
        assert state.last_check is None

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("{not json", encoding="utf-8")

        with pytest.raises(PersistenceFailed):
            StateStore(path).load()

    def test_non_object_raises(self, tmp_path):
        path = tmp_path / "state.json"
        path.write_text("[1, 2, 3]", encoding="utf-8")

        with pytest.raises(PersistenceFailed):
            StateStore(path).load()

    def test_json_field_names(self, tmp_path):
        path = tmp_path / "state.json"
        StateStore(path).save(_sample_state())

        data = json.loads(path.read_text(encoding="utf-8"))
        assert set(data) == {
            "vpn_connected",
            "routes_active",
            "active_services",
            "last_gateway",
            "last_check",
            "start_time",
            "version",
        }
        assert data["active_services"] == {"telegram": True, "youtube": False}

    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "state" / "state.json"
        StateStore(path).save(PersistedState())
        assert path.exists()

    def test_no_temp_files_left(self, tmp_path):
        store = StateStore(tmp_path / "state.json")
        store.save(_sample_state())
        store.save(PersistedState())

        assert os.listdir(tmp_path) == ["state.json"]

    def test_failed_rename_keeps_previous_snapshot(self, tmp_path):
        """A crash between write and rename never corrupts the canonical file."""
        path = tmp_path / "state.json"
        store = StateStore(path)
        store.save(_sample_state())
        before = path.read_text(encoding="utf-8")

        with patch("splitroute.service.state.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceFailed):
                store.save(PersistedState())

        assert path.read_text(encoding="utf-8") == before
        assert os.listdir(tmp_path) == ["state.json"]

    def test_clear(self, tmp_path):
        path = tmp_path / "state.json"
        store = StateStore(path)
        store.save(PersistedState())
        store.clear()
        store.clear()
        assert not path.exists()


class TestPersistedState:
    def test_from_dict_tolerates_missing_fields(self):
        state = PersistedState.from_dict({"routes_active": True})
        assert state.routes_active is True
        assert state.active_services == {}
        assert state.last_gateway == ""


class TestPidFile:
    def test_write_read_remove(self, tmp_path):
        pid_file = PidFile(tmp_path / "run" / "splitroute.pid")

        pid_file.write(1234)
        assert pid_file.read() == 1234

        pid_file.remove()
        pid_file.remove()
        assert pid_file.read() is None

    def test_defaults_to_current_pid(self, tmp_path):
        pid_file = PidFile(tmp_path / "splitroute.pid")
        pid_file.write()
        assert pid_file.read() == os.getpid()
        assert pid_file.is_process_running()

    def test_garbage_is_not_running(self, tmp_path):
        path = tmp_path / "splitroute.pid"
        path.write_text("not-a-pid\n", encoding="utf-8")
        pid_file = PidFile(path)

        assert pid_file.read() is None
        assert not pid_file.is_process_running()

    @patch("splitroute.service.state.psutil.pid_exists", return_value=False)
    def test_dead_process(self, mock_pid_exists, tmp_path):
        pid_file = PidFile(tmp_path / "splitroute.pid")
        pid_file.write(424242)

        assert not pid_file.is_process_running()
        mock_pid_exists.assert_called_once_with(424242)
