from __future__ import annotations

import json

import pytest

from ddkernel.engine.wire import (
    ExecuteFrame,
    ExitFrame,
    FrameDecoder,
    LineDecoder,
    ReadyFrame,
    ResultFrame,
    encode_execute,
    encode_frame,
    encode_result,
    parse_line,
)


def _stream() -> bytes:
    return (
        "PYTHON_SESSION_READY\n"
        + encode_result("e1", {"stdout": "héllo ✓", "stderr": "", "artifacts": []})
        + "some stray print\n"
        + encode_result("e2", {"stdout": "", "stderr": "boom", "artifacts": []})
    ).encode("utf-8")


def test_encoded_frames_are_single_lines():
    line = encode_execute("cell-1_abc", "for i in range(3):\n    print(i)\n")
    assert line.endswith("\n")
    assert line.count("\n") == 1
    assert line.startswith("EXECUTE:")
    payload = json.loads(line[len("EXECUTE:"):])
    assert payload == {
        "executionId": "cell-1_abc",
        "code": "for i in range(3):\n    print(i)\n",
    }


def test_ready_and_exit_lines():
    assert encode_frame(ReadyFrame()) == "PYTHON_SESSION_READY\n"
    assert encode_frame(ExitFrame()) == "EXIT\n"
    assert parse_line("PYTHON_SESSION_READY") == ReadyFrame()
    assert parse_line("EXIT\r\n") == ExitFrame()


def test_encode_frame_rejects_non_frames():
    with pytest.raises(TypeError):
        encode_frame("EXIT")  # type: ignore[arg-type]


def test_parse_execute_frame():
    frame = parse_line(encode_execute("e9", "x = 1"))
    assert frame == ExecuteFrame(execution_id="e9", code="x = 1")


def test_parse_result_accepts_legacy_execution_id_key():
    line = 'RESULT:{"execution_id": "old-1", "result": {"stdout": "ok"}}'
    frame = parse_line(line)
    assert isinstance(frame, ResultFrame)
    assert frame.execution_id == "old-1"
    assert frame.result == {"stdout": "ok"}


def test_parse_result_with_non_object_result_gives_empty_dict():
    frame = parse_line('RESULT:{"executionId": "e1", "result": "nope"}')
    assert frame == ResultFrame(execution_id="e1", result={})


@pytest.mark.parametrize(
    "line",
    [
        "RESULT:{not json",
        "RESULT:[1, 2, 3]",
        'RESULT:{"result": {}}',
        "EXECUTE:{oops",
        "hello world",
        "",
        "   ",
    ],
)
def test_unrecognized_or_malformed_lines_are_ignored(line):
    assert parse_line(line) is None


def test_frames_survive_every_chunk_boundary():
    data = _stream()
    expected = FrameDecoder().feed(data)
    assert [type(f) for f in expected] == [ReadyFrame, ResultFrame, ResultFrame]

    for split in range(1, len(data)):
        decoder = FrameDecoder()
        frames = decoder.feed(data[:split]) + decoder.feed(data[split:])
        frames += decoder.flush()
        assert frames == expected, f"split at byte {split}"


def test_byte_at_a_time_feed_keeps_multibyte_characters():
    decoder = FrameDecoder()
    frames = []
    for i in range(len(_stream())):
        frames.extend(decoder.feed(_stream()[i:i + 1]))
    results = [f for f in frames if isinstance(f, ResultFrame)]
    assert results[0].result["stdout"] == "héllo ✓"
    assert results[1].execution_id == "e2"


def test_crlf_line_endings_are_accepted():
    decoder = FrameDecoder()
    frames = decoder.feed(b"PYTHON_SESSION_READY\r\nRESULT:{\"executionId\": \"e1\", \"result\": {}}\r\n")
    assert frames == [ReadyFrame(), ResultFrame(execution_id="e1", result={})]


def test_ignored_lines_are_counted():
    decoder = FrameDecoder()
    decoder.feed(_stream())
    # The stray print is the only non-frame line.
    assert decoder.ignored_lines == 1


def test_unterminated_tail_is_held_until_flush():
    decoder = LineDecoder()
    assert decoder.feed("EXIT") == []
    assert decoder.pending == "EXIT"
    assert decoder.flush() == ["EXIT"]
    assert decoder.pending == ""


def test_invalid_utf8_is_replaced_not_raised():
    decoder = LineDecoder()
    lines = decoder.feed(b"abc\xff\xfedef\n")
    assert len(lines) == 1
    assert lines[0].startswith("abc")
    assert lines[0].endswith("def")
