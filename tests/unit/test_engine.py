"""Unit tests for the inference engine boundary"""

from types import SimpleNamespace

import numpy as np
import pytest

from audio2afan import InferenceAdapter, InferenceEngine, OnnxEngine, UninitializedError, load_engine


class FakeSession:
    """Mimics the parts of onnxruntime.InferenceSession that OnnxEngine uses."""

    def __init__(self, inputs, outputs):
        self._inputs = [SimpleNamespace(name=n) for n in inputs]
        self._outputs = [SimpleNamespace(name=n) for n in outputs]
        self.last_feeds = None

    def get_inputs(self):
        return self._inputs

    def get_outputs(self):
        return self._outputs

    def get_providers(self):
        return ["CPUExecutionProvider"]

    def run(self, output_names, feeds):
        self.last_feeds = feeds
        return [np.arange(4, dtype=np.float32).reshape(1, 4) for _ in output_names]


class TestOnnxEngine:
    """Session wrapper"""

    def test_names_and_run(self):
        engine = OnnxEngine(FakeSession(["input"], ["out_a", "out_b"]))

        assert isinstance(engine, InferenceEngine)
        assert engine.input_names == ["input"]
        assert engine.output_names == ["out_a", "out_b"]
        assert engine.providers == ["CPUExecutionProvider"]

        outputs = engine.run({"input": np.zeros((1, 1, 8), dtype=np.float32)})
        assert set(outputs) == {"out_a", "out_b"}

    def test_run_after_release(self):
        engine = OnnxEngine(FakeSession(["input"], ["out"]))
        engine.release()
        with pytest.raises(UninitializedError):
            engine.run({})

    def test_load_engine_rejects_garbage(self):
        with pytest.raises(Exception):
            load_engine(b"definitely not an onnx model")


class TestInferenceAdapter:
    """Binding pipeline tensors to engine inputs"""

    def test_infer_before_prepare(self):
        adapter = InferenceAdapter(8)
        with pytest.raises(UninitializedError):
            adapter.infer(np.zeros(8, dtype=np.float32))

    @pytest.mark.parametrize(
        "inputs, expected",
        [
            (["audio", "emotion"], "audio"),
            (["emotion", "input"], "input"),
            (["waveform"], "waveform"),
        ],
    )
    def test_audio_input_name(self, make_engine, inputs, expected):
        adapter = InferenceAdapter(8)
        adapter.prepare(make_engine(inputs=inputs))
        assert adapter.audio_input_name == expected
        assert adapter.has_emotion_input == ("emotion" in inputs)

    def test_feeds_shapes_and_emotion(self, make_engine):
        engine = make_engine()
        adapter = InferenceAdapter(8)
        adapter.prepare(engine)

        emotion = np.zeros(26, dtype=np.float32)
        emotion[6] = 0.7
        out = adapter.infer(np.ones(8, dtype=np.float32), emotion)

        feeds = engine.calls[-1]
        assert feeds["audio"].shape == (1, 1, 8)
        assert feeds["emotion"].shape == (1, 1, 26)
        assert feeds["emotion"][0, 0, 6] == pytest.approx(0.7)
        assert out.ndim == 1
        np.testing.assert_allclose(out, 1.0)

    def test_buffers_reused(self, make_engine):
        captured = []

        class CapturingEngine(make_engine):
            def run(self, feeds):
                captured.append(feeds["audio"])
                return super().run(feeds)

        adapter = InferenceAdapter(8)
        adapter.prepare(CapturingEngine())
        adapter.infer(np.zeros(8, dtype=np.float32))
        adapter.infer(np.ones(8, dtype=np.float32))
        assert captured[0] is captured[1]

        adapter.infer(np.ones(8, dtype=np.float32), reuse_buffers=False)
        assert captured[2] is not captured[1]

    def test_engine_without_emotion_input(self, make_engine):
        engine = make_engine(inputs=["audio"])
        adapter = InferenceAdapter(8)
        adapter.prepare(engine)
        adapter.infer(np.zeros(8, dtype=np.float32), np.ones(26, dtype=np.float32))
        assert list(engine.calls[-1]) == ["audio"]

    def test_engine_without_outputs(self, make_engine):
        engine = make_engine()
        engine._outputs = []
        with pytest.raises(ValueError):
            InferenceAdapter(8).prepare(engine)
