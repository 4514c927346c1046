"""Unit tests for the streaming and batch pipeline"""

import asyncio

import numpy as np
import pytest

from audio2afan import Audio2AfanPipeline, RangeError, UninitializedError, decode_afan
from audio2afan.utils import sigmoid


@pytest.fixture
def pipeline(small_config, fake_engine):
    pipe = Audio2AfanPipeline(small_config)
    pipe.attach_engine(fake_engine)
    yield pipe
    pipe.dispose()


def _expected_weight(level: float) -> float:
    return float(sigmoid(level * 0.1))


class TestStreaming:
    """process_audio / process_audio_chunk"""

    @pytest.mark.asyncio
    async def test_requires_engine(self, small_config):
        pipe = Audio2AfanPipeline(small_config)
        with pytest.raises(UninitializedError):
            await pipe.process_audio_chunk(np.zeros(200, dtype=np.float32))
        assert not pipe._chunk_lock.locked()

    @pytest.mark.asyncio
    async def test_empty_result_until_first_window(self, pipeline):
        result = await pipeline.process_audio_chunk(np.ones(100, dtype=np.float32))

        assert np.all(result.blendshapes.weights == 0.0)
        assert pipeline.buffered_samples == 100
        assert pipeline.last_result is None

    @pytest.mark.asyncio
    async def test_window_then_stride(self, pipeline, fake_engine):
        await pipeline.process_audio_chunk(np.ones(100, dtype=np.float32))
        result = await pipeline.process_audio_chunk(np.ones(50, dtype=np.float32))

        assert len(fake_engine.calls) == 1
        assert pipeline.buffered_samples == 90
        assert result.blendshapes[0] == pytest.approx(_expected_weight(1.0), rel=1e-6)

        await pipeline.process_audio_chunk(np.ones(40, dtype=np.float32))
        assert len(fake_engine.calls) == 2
        assert pipeline.buffered_samples == 70

    @pytest.mark.asyncio
    async def test_large_push_runs_every_window(self, pipeline):
        results = await pipeline.process_audio(np.ones(300, dtype=np.float32))
        assert len(results) == 4
        assert pipeline.buffered_samples == 60
        assert pipeline.last_result is results[-1]

    @pytest.mark.asyncio
    async def test_lock_released_after_engine_failure(self, pipeline, fake_engine):
        fake_engine.fail = True
        with pytest.raises(RuntimeError):
            await pipeline.process_audio_chunk(np.ones(200, dtype=np.float32))
        assert not pipeline._chunk_lock.locked()

        fake_engine.fail = False
        result = await pipeline.process_audio_chunk(np.ones(200, dtype=np.float32))
        assert result.blendshapes[0] > 0.5

    @pytest.mark.asyncio
    async def test_concurrent_pushes_are_serialized(self, pipeline, fake_engine):
        chunks = [np.full(60, i, dtype=np.float32) for i in range(10)]
        await asyncio.gather(*(pipeline.process_audio(c) for c in chunks))

        assert pipeline.buffered_samples == 60
        assert len(fake_engine.calls) == 9
        # Windows were cut from the chunks in push order
        means = [float(np.mean(call["audio"])) for call in fake_engine.calls]
        assert means == pytest.approx([0.5 + i for i in range(9)])

    @pytest.mark.asyncio
    async def test_smoothing_against_previous(self, pipeline):
        pipeline.set_smoothing(0.5)
        first = await pipeline.process_audio_chunk(np.zeros(120, dtype=np.float32))
        second = await pipeline.process_audio_chunk(np.full(60, 20.0, dtype=np.float32))

        # Second window is half zeros, half 20.0: mean 10
        target = _expected_weight(10.0)
        assert second.blendshapes[30] == pytest.approx(0.5 * first.blendshapes[30] + 0.5 * target, rel=1e-5)

    @pytest.mark.asyncio
    async def test_reset(self, pipeline):
        await pipeline.process_audio_chunk(np.ones(150, dtype=np.float32))
        pipeline.reset()
        assert pipeline.buffered_samples == 0
        assert pipeline.last_result is None

    @pytest.mark.asyncio
    async def test_timestamps_are_session_relative(self, pipeline, small_config):
        await pipeline.process_audio(np.ones(100, dtype=np.float32))
        results = await pipeline.process_audio(np.ones(200, dtype=np.float32))

        expected = [(start + 60) / small_config.sample_rate for start in (0, 60, 120, 180)]
        assert [r.timestamp for r in results] == pytest.approx(expected)
        assert pipeline.session_time == pytest.approx(240 / small_config.sample_rate)

    @pytest.mark.asyncio
    async def test_prediction_delay_floors_at_zero(self, small_config, fake_engine):
        pipe = Audio2AfanPipeline(small_config.model_copy(update={"prediction_delay": 0.005}))
        pipe.attach_engine(fake_engine)
        try:
            results = await pipe.process_audio(np.ones(180, dtype=np.float32))
        finally:
            pipe.dispose()

        assert results[0].timestamp == 0.0
        assert results[1].timestamp == pytest.approx(120 / 16000 - 0.005)

    @pytest.mark.asyncio
    async def test_reset_restarts_timestamps(self, pipeline, small_config):
        await pipeline.process_audio(np.ones(300, dtype=np.float32))
        pipeline.reset()
        assert pipeline.session_time == 0.0

        results = await pipeline.process_audio(np.ones(120, dtype=np.float32))
        assert [r.timestamp for r in results] == pytest.approx([60 / small_config.sample_rate])

    @pytest.mark.asyncio
    async def test_streaming_results_render(self, pipeline, small_config):
        results = await pipeline.process_audio(np.ones(300, dtype=np.float32))
        data = pipeline.render_animation(results, duration=300 / small_config.sample_rate, fps=200)

        anim = decode_afan(data)
        assert anim.num_frames == 4
        # Frame 0 sits before the first window centre
        assert np.all(anim.frames[0] == 0.0)
        assert anim.frames[-1][0] == pytest.approx(_expected_weight(1.0), abs=1 / 255)


class TestControls:
    """Emotion and smoothing setters"""

    @pytest.mark.asyncio
    async def test_emotion_reaches_engine(self, pipeline, fake_engine):
        pipeline.set_emotion("joy", 0.7)
        await pipeline.process_audio_chunk(np.zeros(120, dtype=np.float32), emotion={"anger": 2.0})

        emotion = fake_engine.calls[-1]["emotion"][0, 0]
        assert emotion[6] == pytest.approx(0.7)
        assert emotion[1] == pytest.approx(1.0)

    def test_unknown_emotion(self, pipeline):
        with pytest.raises(RangeError):
            pipeline.set_emotion("boredom", 0.5)

    def test_smoothing_regions(self, pipeline):
        pipeline.set_smoothing_region("upper", 0.2)
        pipeline.set_smoothing_region("lower", 1.7)
        assert pipeline.smoothing_upper == pytest.approx(0.2)
        assert pipeline.smoothing_lower == 1.0
        with pytest.raises(RangeError):
            pipeline.set_smoothing_region("middle", 0.5)

    def test_load_config_rebuilds_window(self, pipeline, fake_engine):
        pipeline.load_config({"audio_params": {"buffer_len": 200, "buffer_ofs": 100}})
        assert pipeline.config.buffer_len == 200
        pipeline.run_inference(np.zeros(200, dtype=np.float32))
        assert fake_engine.calls[-1]["audio"].shape == (1, 1, 200)

    def test_strategy_follows_solve_data(self, pipeline):
        assert pipeline.strategy == "direct"
        pipeline.set_solve_data(None)
        assert pipeline.strategy == "direct"


class TestBatch:
    """process_utterance and render_animation"""

    @pytest.mark.asyncio
    async def test_windows_in_time_order(self, pipeline, small_config):
        audio = np.linspace(-5, 5, 600, dtype=np.float32)
        results = await pipeline.process_utterance(audio, concurrency=4)

        assert len(results) == 9
        timestamps = [r.timestamp for r in results]
        expected = [(start + 60) / small_config.sample_rate for start in range(0, 481, 60)]
        assert timestamps == pytest.approx(expected)
        # Ramp input: later windows have larger means, so weights increase
        weights = [r.blendshapes[0] for r in results]
        assert weights == sorted(weights)

    @pytest.mark.asyncio
    async def test_short_audio_is_padded(self, pipeline, fake_engine):
        results = await pipeline.process_utterance(np.ones(30, dtype=np.float32))
        assert len(results) == 1
        assert fake_engine.calls[0]["audio"].shape == (1, 1, 120)

    @pytest.mark.asyncio
    async def test_empty_audio(self, pipeline):
        assert await pipeline.process_utterance(np.array([], dtype=np.float32)) == []

    @pytest.mark.asyncio
    async def test_batch_leaves_stream_state_alone(self, pipeline):
        await pipeline.process_audio_chunk(np.ones(50, dtype=np.float32))
        await pipeline.process_utterance(np.ones(400, dtype=np.float32))
        assert pipeline.buffered_samples == 50
        assert pipeline.last_result is None

    @pytest.mark.asyncio
    async def test_render_animation(self, pipeline):
        results = await pipeline.process_utterance(np.ones(16000, dtype=np.float32))
        data = pipeline.render_animation(results, duration=1.0, fps=30)

        anim = decode_afan(data)
        assert anim.fps == 30
        assert anim.num_frames == 30
        assert anim.num_channels == 52


class TestLifecycle:
    def test_dispose_releases_engine(self, small_config, make_engine):
        engine = make_engine()
        pipe = Audio2AfanPipeline(small_config)
        pipe.attach_engine(engine)
        pipe.dispose()

        assert engine.released
        assert not pipe.is_ready

    @pytest.mark.asyncio
    async def test_reusable_after_dispose(self, pipeline, make_engine):
        await pipeline.process_audio(np.ones(150, dtype=np.float32))
        pipeline.dispose()

        engine = make_engine()
        pipeline.attach_engine(engine)
        results = await pipeline.process_audio(np.ones(300, dtype=np.float32))

        assert len(results) == 4
        assert len(engine.calls) == 4
        assert results[0].timestamp == pytest.approx(60 / 16000)
