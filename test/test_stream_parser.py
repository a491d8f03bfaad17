#!/usr/bin/env python3
"""Tests for the client-side event parser (fragmentation, malformed records, EOF)."""

import json
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

_project = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_project))
sys.path.insert(0, str(_project / "bin"))

from models import WireEvent
from stream_parser import EventParser, iter_events


def _record(text, sources=(), error=False):
    payload = {"text": text, "sources": [{"uri": u, "title": t} for u, t in sources], "error": error}
    return ("data: " + json.dumps(payload, ensure_ascii=False) + "\n\n").encode("utf-8")


def _parse(pieces):
    parser = EventParser()
    events = []
    for piece in pieces:
        events.extend(parser.feed(piece))
    events.extend(parser.close())
    return events, parser


class TestWholeRecords(unittest.TestCase):

    def test_single_record(self):
        events, _ = _parse([_record("Salut", [("https://bibnat.ro", "BNaR")])])
        self.assertEqual(events, [WireEvent(text="Salut", sources=(("https://bibnat.ro", "BNaR"),))])

    def test_multiple_records_in_one_read(self):
        events, _ = _parse([_record("a") + _record("b") + _record("c")])
        self.assertEqual([e.text for e in events], ["a", "b", "c"])

    def test_error_flag_decoded(self):
        events, _ = _parse([_record("oops", error=True)])
        self.assertTrue(events[0].error)

    def test_feed_returns_only_completed_records(self):
        parser = EventParser()
        data = _record("a") + _record("b")
        cut = len(_record("a")) + 5
        self.assertEqual([e.text for e in parser.feed(data[:cut])], ["a"])
        self.assertEqual([e.text for e in parser.feed(data[cut:])], ["b"])
        self.assertEqual(parser.close(), [])


class TestFragmentation(unittest.TestCase):

    def test_split_at_any_byte_parses_identically(self):
        """A record split at any byte boundary decodes like the whole record."""
        data = _record("Biblioteca Națională ăîșțâ", [("https://bibnat.ro/ü", "Ünicode")])
        whole, _ = _parse([data])
        for cut in range(1, len(data)):
            with self.subTest(cut=cut):
                split, _ = _parse([data[:cut], data[cut:]])
                self.assertEqual(split, whole)

    def test_byte_at_a_time(self):
        data = _record("ă") + _record("ț")
        events, _ = _parse([data[i:i + 1] for i in range(len(data))])
        self.assertEqual([e.text for e in events], ["ă", "ț"])

    def test_crlf_line_endings(self):
        data = b'data: {"text": "a"}\r\n\r\ndata: {"text": "b"}\r\n\r\n'
        events, _ = _parse([data[:18], data[18:]])
        self.assertEqual([e.text for e in events], ["a", "b"])

    def test_crlf_split_at_every_byte(self):
        data = b'data: {"text": "a"}\r\n\r\ndata: {"text": "b"}\r\n\r\n'
        for cut in range(1, len(data)):
            with self.subTest(cut=cut):
                events, _ = _parse([data[:cut], data[cut:]])
                self.assertEqual([e.text for e in events], ["a", "b"])

    def test_crlf_byte_at_a_time(self):
        data = b'data: {"text": "a"}\r\n\r\ndata: {"text": "b"}\r\n'
        events, _ = _parse([data[i:i + 1] for i in range(len(data))])
        self.assertEqual([e.text for e in events], ["a", "b"])

    def test_large_record_in_small_pieces(self):
        text = "ă" * 20000
        data = _record(text)
        events, _ = _parse([data[i:i + 7] for i in range(0, len(data), 7)])
        self.assertEqual([e.text for e in events], [text])


class TestMalformedRecords(unittest.TestCase):

    def test_malformed_record_between_valid_records_is_skipped(self):
        with patch("builtins.print"):
            events, parser = _parse([_record("a") + b"data: {not json\n\n" + _record("b")])
        self.assertEqual([e.text for e in events], ["a", "b"])
        self.assertEqual(parser.skipped, 1)
        self.assertEqual(parser.decoded, 2)

    def test_wrong_shapes_are_skipped(self):
        data = (b'data: [1, 2]\n\n'
                b'data: {"text": 5}\n\n'
                b'data: {"text": "ok", "sources": "nope"}\n\n'
                b'data: {"candidates": [{"groundingMetadata": "x"}]}\n\n'
                b'data: {"candidates": [{"groundingMetadata": {"groundingChunks": 5}}]}\n\n'
                + _record("fine"))
        with patch("builtins.print"):
            events, parser = _parse([data])
        self.assertEqual([e.text for e in events], ["fine"])
        self.assertEqual(parser.skipped, 5)

    def test_bad_grounding_shape_keeps_neighbours_in_same_read(self):
        data = (_record("a")
                + b'data: {"candidates": [{"groundingMetadata": "x"}]}\n\n'
                + _record("b"))
        with patch("builtins.print"):
            events = list(iter_events([data]))
        self.assertEqual([e.text for e in events], ["a", "b"])

    def test_malformed_record_is_logged(self):
        with patch("builtins.print") as mock_print:
            _parse([b"data: {oops\n\n"])
        self.assertTrue(any("malformed" in str(c) for c in mock_print.call_args_list))


class TestStreamEnd(unittest.TestCase):

    def test_unterminated_final_record_is_decoded(self):
        events, _ = _parse([_record("a") + b'data: {"text": "tail"}'])
        self.assertEqual([e.text for e in events], ["a", "tail"])

    def test_truncated_final_record_is_skipped(self):
        with patch("builtins.print"):
            events, parser = _parse([_record("a") + b'data: {"text": "ta'])
        self.assertEqual([e.text for e in events], ["a"])
        self.assertEqual(parser.skipped, 1)

    def test_empty_stream_yields_nothing(self):
        events, _ = _parse([])
        self.assertEqual(events, [])

    def test_feed_after_close_rejected(self):
        parser = EventParser()
        parser.close()
        with self.assertRaises(RuntimeError):
            parser.feed(b"data: {}\n\n")


class TestRecordSyntax(unittest.TestCase):

    def test_comments_and_other_fields_ignored(self):
        data = b': keep-alive\n\nevent: message\nid: 7\ndata: {"text": "x"}\n\n'
        events, _ = _parse([data])
        self.assertEqual([e.text for e in events], ["x"])

    def test_multiline_data_joined(self):
        data = b'data: {"text":\ndata: "joined"}\n\n'
        events, _ = _parse([data])
        self.assertEqual(events[0].text, "joined")

    def test_raw_backend_chunk_shape_accepted(self):
        chunk = {
            "text": "hi",
            "candidates": [{"groundingMetadata": {"groundingChunks": [
                {"web": {"uri": "https://bibnat.ro/x", "title": "bibnat.ro"}},
            ]}}],
        }
        events, _ = _parse([("data: " + json.dumps(chunk) + "\n\n").encode()])
        self.assertEqual(events[0].sources, (("https://bibnat.ro/x", "bibnat.ro"),))


class TestIterEvents(unittest.TestCase):

    def test_lazy_over_byte_pieces(self):
        pulled = []

        def pieces():
            for piece in (_record("a"), _record("b")):
                pulled.append(piece)
                yield piece

        gen = iter_events(pieces())
        self.assertEqual(next(gen).text, "a")
        self.assertEqual(len(pulled), 1)
        self.assertEqual([e.text for e in gen], ["b"])

    def test_empty_pieces_ignored(self):
        events = list(iter_events([b"", _record("a"), b""]))
        self.assertEqual([e.text for e in events], ["a"])


if __name__ == "__main__":
    unittest.main()
