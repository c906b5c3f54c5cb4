"""Tests for the ONNX model manager."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from retrainex.config import Settings
from retrainex.ml.model_manager import MODEL_REGISTRY, OnnxModelManager, get_spec

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "models_dir": "/tmp/retrainex_test_models",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "max_concurrent": 2,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Model registry tests
# ---------------------------------------------------------------------------


class TestModelRegistry:
    def test_known_model_lookup(self) -> None:
        spec = MODEL_REGISTRY["mobilenet_v1_025_224"]
        assert spec.name == "mobilenet_v1_025_224"
        assert spec.embedding_output == "conv_pw_13_relu"
        assert spec.input_size == 224

    def test_default_extractor_is_registered(self) -> None:
        assert Settings().extractor_model in MODEL_REGISTRY

    def test_names_match_keys(self) -> None:
        for key, spec in MODEL_REGISTRY.items():
            assert spec.name == key

    def test_embedding_and_logits_outputs_differ(self) -> None:
        for spec in MODEL_REGISTRY.values():
            assert spec.embedding_output != spec.logits_output

    def test_get_spec_unknown_model(self) -> None:
        with pytest.raises(KeyError, match="Unknown model"):
            get_spec("nonexistent_model")


# ---------------------------------------------------------------------------
# OnnxModelManager tests
# ---------------------------------------------------------------------------


class TestOnnxModelManager:
    @patch("retrainex.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_calls_hf_hub_download(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/retrainex_test_models/mobilenet_v1_0.25_224.onnx"
        mgr = OnnxModelManager(_make_settings())

        path = mgr.ensure_downloaded("mobilenet_v1_025_224")

        mock_download.assert_called_once_with(
            repo_id="retrainex/mobilenet-onnx",
            filename="mobilenet_v1_0.25_224.onnx",
            subfolder=None,
            local_dir="/tmp/retrainex_test_models",
        )
        assert path == Path("/tmp/retrainex_test_models/mobilenet_v1_0.25_224.onnx")

    @patch("retrainex.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_passes_subfolder(self, mock_download: MagicMock) -> None:
        mock_download.return_value = "/tmp/retrainex_test_models/v2/mobilenet_v2_1.0_224.onnx"
        mgr = OnnxModelManager(_make_settings())

        mgr.ensure_downloaded("mobilenet_v2_100_224")

        assert mock_download.call_args.kwargs["subfolder"] == "v2"

    @patch("retrainex.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_skips_existing(self, mock_download: MagicMock, tmp_path: Path) -> None:
        model_file = tmp_path / "mobilenet_v1_0.25_224.onnx"
        model_file.touch()

        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        # Simulate a previous download by setting the cached path.
        mgr._model_paths["mobilenet_v1_025_224"] = model_file

        path = mgr.ensure_downloaded("mobilenet_v1_025_224")

        mock_download.assert_not_called()
        assert path == model_file

    @patch("retrainex.ml.model_manager.hf_hub_download")
    def test_ensure_downloaded_refetches_missing_file(self, mock_download: MagicMock, tmp_path: Path) -> None:
        mock_download.return_value = str(tmp_path / "mobilenet_v1_0.25_224.onnx")
        mgr = OnnxModelManager(_make_settings(models_dir=str(tmp_path)))
        mgr._model_paths["mobilenet_v1_025_224"] = tmp_path / "deleted.onnx"

        mgr.ensure_downloaded("mobilenet_v1_025_224")

        mock_download.assert_called_once()

    @patch("retrainex.ml.model_manager.InferenceSession")
    @patch("retrainex.ml.model_manager.hf_hub_download")
    def test_get_session_creates_and_caches(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/retrainex_test_models/mobilenet_v1_0.25_224.onnx"
        mock_session = MagicMock()
        mock_session_cls.return_value = mock_session

        mgr = OnnxModelManager(_make_settings())

        session1 = mgr.get_session("mobilenet_v1_025_224")
        session2 = mgr.get_session("mobilenet_v1_025_224")

        assert session1 is mock_session
        assert session2 is mock_session
        mock_session_cls.assert_called_once()
        assert mock_session_cls.call_args.kwargs["providers"] == ["CPUExecutionProvider"]

    @patch("retrainex.ml.model_manager.InferenceSession")
    @patch("retrainex.ml.model_manager.hf_hub_download")
    def test_get_loaded_models(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/retrainex_test_models/mobilenet_v1_0.25_224.onnx"
        mgr = OnnxModelManager(_make_settings())

        assert mgr.get_loaded_models() == []
        mgr.get_session("mobilenet_v1_025_224")
        assert mgr.get_loaded_models() == ["mobilenet_v1_025_224"]

    def test_provider_building_cpu(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cpu"))
        assert mgr._providers == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="cuda"))
        assert len(mgr._providers) == 2
        provider_name, provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        mgr = OnnxModelManager(_make_settings(device="openvino"))
        assert len(mgr._providers) == 2
        provider_name, _provider_opts = mgr._providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert mgr._providers[1] == "CPUExecutionProvider"

    def test_session_options_threads(self) -> None:
        mgr = OnnxModelManager(_make_settings(intra_op_threads=3, inter_op_threads=2))
        assert mgr._session_options.intra_op_num_threads == 3
        assert mgr._session_options.inter_op_num_threads == 2

    @patch("retrainex.ml.model_manager.InferenceSession")
    @patch("retrainex.ml.model_manager.hf_hub_download")
    def test_shutdown_clears_sessions(self, mock_download: MagicMock, mock_session_cls: MagicMock) -> None:
        mock_download.return_value = "/tmp/retrainex_test_models/mobilenet_v1_0.25_224.onnx"
        mgr = OnnxModelManager(_make_settings())
        mgr.get_session("mobilenet_v1_025_224")
        assert len(mgr.get_loaded_models()) == 1

        mgr.shutdown()
        assert mgr.get_loaded_models() == []

    def test_unknown_model_raises_keyerror(self) -> None:
        mgr = OnnxModelManager(_make_settings())
        with pytest.raises(KeyError, match="Unknown model"):
            mgr.ensure_downloaded("totally_fake_model")
