import os

import pytest

from limaconf.localpath import expand


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("USERPROFILE", str(tmp_path))
    return str(tmp_path)


def test_empty_path_is_rejected():
    with pytest.raises(ValueError, match="empty path"):
        expand("")


def test_tilde_alone_is_home(home):
    assert expand("~") == os.path.abspath(home)


def test_tilde_slash_prefix(home):
    assert expand("~/foo") == os.path.abspath(os.path.join(home, "foo"))


def test_tilde_user_form_is_unsupported(home):
    with pytest.raises(ValueError, match="unexpandable path"):
        expand("~foo/bar")


def test_relative_path_becomes_absolute(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    result = expand("sub/dir")
    assert os.path.isabs(result)
    assert result == os.path.abspath(os.path.join(str(tmp_path), "sub", "dir"))


def test_absolute_path_is_cleaned(tmp_path):
    messy = os.path.join(str(tmp_path), "a", "..", "b")
    assert expand(messy) == os.path.join(os.path.abspath(str(tmp_path)), "b")