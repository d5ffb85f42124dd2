import asyncio
import logging
import random

from engine.decoder import LineDecoder, decode_lines, iter_lines

_STREAM = (
    '{"job_id":"J1","status":"started"}\n'
    '{"email":"x@y.com","category":"valid"}\r\n'
    "\n"
    '{"email":"café@y.com","category":"risky","provider":"müller"}\n'
    '{"job_id":"J1","status":"completed","results":{"valid":1,"invalid":0,"risky":1}}\n'
).encode("utf-8")

_EXPECTED = [
    '{"job_id":"J1","status":"started"}',
    '{"email":"x@y.com","category":"valid"}',
    '{"email":"café@y.com","category":"risky","provider":"müller"}',
    '{"job_id":"J1","status":"completed","results":{"valid":1,"invalid":0,"risky":1}}',
]


def _split(data: bytes, cuts: list[int]) -> list[bytes]:
    bounds = [0, *sorted(cuts), len(data)]
    return [data[a:b] for a, b in zip(bounds, bounds[1:])]


def test_single_chunk() -> None:
    assert list(decode_lines([_STREAM])) == _EXPECTED


def test_every_two_way_split_yields_same_lines() -> None:
    for cut in range(len(_STREAM) + 1):
        assert list(decode_lines(_split(_STREAM, [cut]))) == _EXPECTED, cut


def test_random_splits_yield_same_lines() -> None:
    rng = random.Random(1234)
    for _ in range(200):
        cuts = rng.sample(range(len(_STREAM) + 1), rng.randint(1, 12))
        assert list(decode_lines(_split(_STREAM, cuts))) == _EXPECTED


def test_byte_at_a_time() -> None:
    chunks = [_STREAM[i : i + 1] for i in range(len(_STREAM))]
    assert list(decode_lines(chunks)) == _EXPECTED


def test_partial_line_is_buffered_until_newline() -> None:
    decoder = LineDecoder()

    assert decoder.feed(b'{"email":"a@') == []
    assert decoder.pending == '{"email":"a@'
    assert decoder.feed(b'b.com"}\n{"ema') == ['{"email":"a@b.com"}']
    assert decoder.pending == '{"ema'


def test_truncated_tail_is_discarded_and_logged(caplog) -> None:
    data = b'{"job_id":"J1","status":"started"}\n{"email":"cut@off'

    with caplog.at_level(logging.WARNING, logger="verifystream.decoder"):
        lines = list(decode_lines(_split(data, [10, 40])))

    assert lines == ['{"job_id":"J1","status":"started"}']
    assert "truncated" in caplog.text


def test_iter_lines_async_matches_sync() -> None:
    async def chunks():
        for chunk in _split(_STREAM, [3, 50, 51, 97]):
            await asyncio.sleep(0)
            yield chunk

    async def run():
        return [line async for line in iter_lines(chunks())]

    assert asyncio.run(run()) == _EXPECTED
