"""Tests for outgoing chat message chunking."""

from parley.bridge.formatter import MAX_MESSAGE_LENGTH, chunk_message


class TestChunkMessage:
    def test_short_message_untouched(self):
        assert chunk_message("hello") == ["hello"]

    def test_default_limit(self):
        assert MAX_MESSAGE_LENGTH == 3500
        assert chunk_message("x" * 3500) == ["x" * 3500]

    def test_paragraph_split_with_prefixes(self):
        text = "a" * 10 + "\n\n" + "b" * 10
        assert chunk_message(text, max_length=15) == ["[1/2] " + "a" * 10, "[2/2] " + "b" * 10]

    def test_paragraphs_packed_together(self):
        text = "\n\n".join(["aaaa", "bbbb", "cccc"])
        chunks = chunk_message(text, max_length=11)
        assert chunks == ["[1/2] aaaa\n\nbbbb", "[2/2] cccc"]

    def test_long_paragraph_split_by_lines(self):
        text = "\n".join(["a" * 8, "b" * 8, "c" * 8])
        chunks = chunk_message(text, max_length=20)
        assert chunks == ["[1/2] " + "a" * 8 + "\n" + "b" * 8, "[2/2] " + "c" * 8]

    def test_code_block_never_split(self):
        block = "```\n" + "x" * 30 + "\n```"
        chunks = chunk_message("intro\n\n" + block, max_length=20)
        assert chunks == ["[1/2] intro", "[2/2] " + block]

    def test_code_block_with_blank_lines_stays_whole(self):
        block = "```\nline one\n\nline two\n```"
        text = "p" * 30 + "\n\n" + block + "\n\n" + "q" * 30
        chunks = chunk_message(text, max_length=40)
        assert any(block in c for c in chunks)
        assert all(c.count("```") % 2 == 0 for c in chunks)

    def test_placeholder_lookalike_text_kept_verbatim(self):
        text = "The template uses __CODE_BLOCK_3__ as a marker.\n\n" + "x" * 50
        chunks = chunk_message(text, max_length=30)
        assert chunks == [
            "[1/2] The template uses __CODE_BLOCK_3__ as a marker.",
            "[2/2] " + "x" * 50,
        ]

    def test_placeholder_lookalike_next_to_real_code_block(self):
        block = "```\nprint(1)\n```"
        text = "see __CODE_BLOCK_0__\n\n" + block
        assert chunk_message(text) == [text]
