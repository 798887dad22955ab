import pytest

from limaconf.dirlock import dir_lock, with_dir_lock


def test_returns_result_of_callable(tmp_path):
    assert with_dir_lock(tmp_path, lambda: 42) == 42


def test_callable_error_propagates_and_lock_is_released(tmp_path):
    def boom():
        raise ValueError("inside")

    with pytest.raises(ValueError, match="inside"):
        with_dir_lock(tmp_path, boom)
    assert with_dir_lock(tmp_path, lambda: "again") == "again"


def test_missing_directory_raises(tmp_path):
    missing = tmp_path / "missing" / "inner"
    with pytest.raises(FileNotFoundError):
        with_dir_lock(missing, lambda: None)


def test_context_manager_runs_body_and_can_be_reacquired(tmp_path):
    seen = []
    with dir_lock(str(tmp_path)):
        seen.append("first")
    with dir_lock(str(tmp_path)):
        seen.append("second")
    result = with_dir_lock(tmp_path, lambda: list(seen))
    assert result == ["first", "second"]