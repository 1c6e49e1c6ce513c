# tests/test_hub.py
"""Tests for model repository access."""

from unittest.mock import call, patch

import pytest

from server.errors import TokenizerLoadError, WeightLoadError
from server.hub import ModelFiles, fetch_model_files, fetch_tokenizer_file


def _fake_download(repo_id, filename, revision=None, cache_dir=None):
    return f"/cache/{repo_id}/{revision}/{filename}"


class TestFetchModelFiles:

    def test_returns_weights_and_config(self):
        with patch("server.hub.hf_hub_download", side_effect=_fake_download) as download:
            files = fetch_model_files("org/blip", "refs/pr/18", cache_dir="/tmp/hf")

        assert files.weights_path == "/cache/org/blip/refs/pr/18/model.safetensors"
        assert files.config_path == "/cache/org/blip/refs/pr/18/config.json"
        assert files.snapshot_dir == "/cache/org/blip/refs/pr/18"
        download.assert_has_calls([
            call(repo_id="org/blip", filename="model.safetensors", revision="refs/pr/18", cache_dir="/tmp/hf"),
            call(repo_id="org/blip", filename="config.json", revision="refs/pr/18", cache_dir="/tmp/hf"),
        ])

    def test_download_failure_is_weight_load_error(self):
        with patch("server.hub.hf_hub_download", side_effect=OSError("no network")):
            with pytest.raises(WeightLoadError, match="org/blip@main"):
                fetch_model_files("org/blip", "main")

    def test_model_files_is_immutable(self):
        files = ModelFiles("/a/model.safetensors", "/a/config.json")
        with pytest.raises(AttributeError):
            files.weights_path = "/b"


class TestFetchTokenizerFile:

    def test_returns_path(self):
        with patch("server.hub.hf_hub_download", side_effect=_fake_download):
            assert fetch_tokenizer_file("org/blip") == "/cache/org/blip/main/tokenizer.json"

    def test_download_failure_is_tokenizer_load_error(self):
        with patch("server.hub.hf_hub_download", side_effect=ValueError("bad repo id")):
            with pytest.raises(TokenizerLoadError):
                fetch_tokenizer_file("org/blip")
