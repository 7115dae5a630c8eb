import time
from pathlib import Path

import pytest
from PIL import Image

from conftest import FakeEngine, make_png
from pixelpress.conversion.engine import PillowEngine
from pixelpress.conversion.models import ConversionOptions, JobInput
from pixelpress.conversion.service import JobProcessor
from pixelpress.errors import EngineError, ValidationError


def write_inputs(tmp_path, *names) -> list[Path]:
    src = tmp_path / "in"
    src.mkdir(exist_ok=True)
    paths = []
    for name in names:
        p = src / name
        p.write_bytes(make_png())
        paths.append(p)
    return paths


def test_converts_sequentially_with_keep_original_names(tmp_path, processor, fake_engine):
    inputs = write_inputs(tmp_path, "a.png", "b.png")
    out = tmp_path / "out"
    results = processor.run(inputs, out, ConversionOptions(output_format="webp"))
    assert [r.converted_name for r in results] == ["a.webp", "b.webp"]
    assert all(r.success for r in results)
    assert all((out / r.converted_name).stat().st_size > 0 for r in results)
    assert [call[0].name for call in fake_engine.calls] == ["a.png", "b.png"]
    assert results[0].width == 24 and results[0].height == 24


def test_client_name_drives_naming(tmp_path, processor):
    (stored,) = write_inputs(tmp_path, "original-0-a.png")
    results = processor.run([JobInput(path=stored, name="a.png")], tmp_path / "out", ConversionOptions(output_format="jpeg"))
    assert results[0].converted_name == "a.jpeg"
    assert results[0].original_name == "a.png"


def test_colliding_names_get_numeric_suffix(tmp_path, processor):
    first, second = write_inputs(tmp_path, "x1.png", "x2.png")
    inputs = [JobInput(first, "same.png"), JobInput(second, "same.png")]
    out = tmp_path / "out"
    results = processor.run(inputs, out, ConversionOptions(output_format="png"))
    assert [r.converted_name for r in results] == ["same.png", "same_1.png"]
    assert (out / "same.png").is_file() and (out / "same_1.png").is_file()


def test_single_failure_does_not_abort_batch(tmp_path):
    processor = JobProcessor(FakeEngine(fail_for=("bad",)), timeout=5)
    try:
        inputs = write_inputs(tmp_path, "good.png", "bad.png", "fine.png")
        results = processor.run(inputs, tmp_path / "out", ConversionOptions(output_format="png"))
    finally:
        processor.shutdown()
    assert [r.success for r in results] == [True, False, True]
    assert results[1].error == "engine exploded"
    assert results[1].converted_name == ""


def test_empty_output_is_a_failure_and_removed(tmp_path):
    processor = JobProcessor(FakeEngine(empty_for=("hollow",)), timeout=5)
    try:
        inputs = write_inputs(tmp_path, "hollow.png", "ok.png")
        out = tmp_path / "out"
        results = processor.run(inputs, out, ConversionOptions(output_format="png"))
    finally:
        processor.shutdown()
    assert results[0].success is False
    assert results[0].error == "Engine produced no output"
    assert not (out / "hollow.png").exists()


def test_every_file_failing_raises_engine_error_with_results(tmp_path):
    processor = JobProcessor(FakeEngine(fail_for=(".png",)), timeout=5)
    try:
        inputs = write_inputs(tmp_path, "a.png", "b.png")
        with pytest.raises(EngineError) as exc:
            processor.run(inputs, tmp_path / "out", ConversionOptions(output_format="png"))
    finally:
        processor.shutdown()
    assert len(exc.value.results) == 2
    assert "engine exploded" in exc.value.message


def test_engine_timeout_is_recorded_not_retried(tmp_path):
    engine = FakeEngine(delay=0.5)
    processor = JobProcessor(engine, timeout=0.05)
    try:
        inputs = write_inputs(tmp_path, "slow.png")
        with pytest.raises(EngineError) as exc:
            processor.run(inputs, tmp_path / "out", ConversionOptions(output_format="png"))
    finally:
        processor.shutdown()
    assert "timed out" in exc.value.results[0].error
    assert len(engine.calls) == 1


def test_missing_or_empty_input_fails_that_file(tmp_path, processor):
    good, empty = write_inputs(tmp_path, "good.png", "empty.png")
    empty.write_bytes(b"")
    missing = tmp_path / "in" / "gone.png"
    results = processor.run([good, empty, missing], tmp_path / "out", ConversionOptions(output_format="png"))
    assert [r.success for r in results] == [True, False, False]


def test_progress_is_reported_and_callback_errors_are_swallowed(tmp_path, processor):
    seen = []

    def on_progress(current, total, operation, current_file):
        seen.append((current, total))
        raise RuntimeError("progress store down")

    inputs = write_inputs(tmp_path, "a.png", "b.png")
    results = processor.run(inputs, tmp_path / "out", ConversionOptions(output_format="png"), on_progress)
    assert all(r.success for r in results)
    assert seen[-1] == (2, 2)
    currents = [c for c, _ in seen]
    assert currents == sorted(currents)


def test_invalid_options_and_empty_batch_are_validation_errors(tmp_path, processor):
    with pytest.raises(ValidationError):
        processor.run([], tmp_path / "out", ConversionOptions(output_format="png"))
    with pytest.raises(ValidationError):
        processor.run(write_inputs(tmp_path, "a.png"), tmp_path / "out", ConversionOptions(output_format="avif"))


def test_pillow_engine_converts_png_to_jpeg(tmp_path):
    processor = JobProcessor(PillowEngine(), timeout=10)
    try:
        inputs = write_inputs(tmp_path, "a.png")
        results = processor.run(inputs, tmp_path / "out", ConversionOptions(output_format="jpeg", quality=80))
    finally:
        processor.shutdown()
    assert results[0].success
    assert results[0].converted_name == "a.jpeg"
    with Image.open(tmp_path / "out" / "a.jpeg") as img:
        assert img.format == "JPEG"
        assert img.size == (24, 24)


class StallingEngine(FakeEngine):
    """Inputs named ``slow*`` finish long after the timeout and then write a marker."""

    def transform(self, input_path, output_path, options):
        self.calls.append((input_path, output_path))
        if input_path.name.startswith("slow"):
            time.sleep(0.4)
            output_path.write_bytes(b"late write from abandoned call")
            return
        output_path.write_bytes(b"fast result")


def test_late_write_from_timed_out_call_never_lands_in_outputs(tmp_path):
    slow, fast = write_inputs(tmp_path, "slow.png", "fast.png")
    out = tmp_path / "out"
    processor = JobProcessor(StallingEngine(), timeout=0.1)
    try:
        results = processor.run(
            [JobInput(slow, "a.png"), JobInput(fast, "a.png")],
            out,
            ConversionOptions(output_format="png"),
        )
        time.sleep(0.8)
    finally:
        processor.shutdown()
    assert [(r.success, r.converted_name) for r in results] == [(False, ""), (True, "a.png")]
    assert (out / "a.png").read_bytes() == b"fast result"
    assert sorted(p.name for p in out.iterdir()) == ["a.png"]
