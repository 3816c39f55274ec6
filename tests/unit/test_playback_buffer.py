# pylint: disable=missing-module-docstring,missing-function-docstring

import numpy as np
import pytest

from audio.pcm import pcm16le_to_float32, rms_level
from audio.playback import PcmBuffer
from spec import VOICE_SAMPLE_RATE_HZ

# 20 ms of PCM16 mono silence
CHUNK = b"\x00\x00" * (VOICE_SAMPLE_RATE_HZ // 50)
CHUNK_S = 0.02


# ---------------------------------------------------------------------
# depth_seconds math
# ---------------------------------------------------------------------

def test_depth_seconds_exact():
    buf = PcmBuffer(max_depth_s=1.0)

    buf.enqueue(CHUNK)
    buf.enqueue(CHUNK)
    buf.enqueue(CHUNK)

    assert buf.depth_seconds() == pytest.approx(3 * CHUNK_S)
    assert len(buf) == 3


# ---------------------------------------------------------------------
# Overflow behavior
# ---------------------------------------------------------------------

def test_overflow_drops_newest():
    buf = PcmBuffer(max_depth_s=2 * CHUNK_S)

    assert buf.enqueue(CHUNK) is True
    assert buf.enqueue(CHUNK) is True

    # Would exceed max_depth_s
    assert buf.enqueue(CHUNK) is False

    assert buf.drops.overflow == 1
    assert buf.total_drops() == 1
    assert len(buf) == 2


def test_drop_oldest_evicts_head():
    buf = PcmBuffer(max_depth_s=2 * CHUNK_S, drop_oldest=True)
    first = b"\x01\x00" * (len(CHUNK) // 2)

    buf.enqueue(first)
    buf.enqueue(CHUNK)
    assert buf.enqueue(CHUNK) is True

    assert buf.drops.overflow == 1
    assert [buf.dequeue(), buf.dequeue(), buf.dequeue()] == [CHUNK, CHUNK, None]


def test_oversized_chunk_is_rejected():
    buf = PcmBuffer(max_depth_s=CHUNK_S / 2)
    assert buf.enqueue(CHUNK) is False
    assert buf.drops.oversized == 1
    assert buf.is_empty()


def test_clear_does_not_count_drops():
    buf = PcmBuffer(max_depth_s=1.0)
    buf.enqueue(CHUNK)
    buf.clear()
    assert buf.is_empty()
    assert buf.total_drops() == 0
    assert buf.depth_seconds() == 0.0


def test_fifo_order():
    buf = PcmBuffer(max_depth_s=1.0)
    buf.enqueue(b"\x01\x00")
    buf.enqueue(b"\x02\x00")
    assert buf.dequeue() == b"\x01\x00"
    assert buf.dequeue() == b"\x02\x00"
    assert buf.dequeue() is None


def test_invalid_depth_rejected():
    with pytest.raises(ValueError):
        PcmBuffer(max_depth_s=0)


# ---------------------------------------------------------------------
# Levels
# ---------------------------------------------------------------------

def test_pcm_conversion_and_rms():
    samples = pcm16le_to_float32(b"\x00\x80\xff\x7f\x00")
    assert samples.dtype == np.float32
    assert samples.shape == (2,)
    assert samples[0] == -1.0

    assert rms_level(b"") == 0.0
    assert rms_level(CHUNK) == 0.0
    assert rms_level(b"\x00\x80" * 4) == pytest.approx(1.0)
