from __future__ import annotations

from flowlink.shared.context import (
    ContextFile,
    build_additional_context,
    enhance_goal,
    extract_goal,
    parse_file_blocks,
    selected_files,
)


def test_parse_file_blocks() -> None:
    text = (
        'Selected:\n<file path="src/a.py" language="python">print(1)\n</file>\n'
        '<file path="src/b.md" language="">notes</file>\n'
        '<file path="" language="python">orphan</file>'
    )

    files = parse_file_blocks(text)

    assert [f.file_path for f in files] == ["src/a.py", "src/b.md"]
    assert files[0].content == "print(1)\n"
    assert files[0].language == "python"
    assert files[1].language is None
    assert parse_file_blocks("") == []


def test_additional_context_puts_current_file_first() -> None:
    current = ContextFile("x = 1", "/repo/foo.py", "python")
    selected = [
        ContextFile("x = 1", "/repo/foo.py"),
        ContextFile("y = 2", "/repo/bar.py"),
    ]

    context = build_additional_context(current, selected)

    assert context == [
        {
            "category": "file",
            "content": "x = 1",
            "metadata": {"file_name": "foo.py", "file_path": "/repo/foo.py"},
        },
        {
            "category": "file",
            "content": "y = 2",
            "metadata": {"file_name": "bar.py", "file_path": "/repo/bar.py"},
        },
    ]


def test_empty_current_file_is_skipped() -> None:
    assert build_additional_context(ContextFile("", "/repo/empty.py")) == []
    assert build_additional_context() == []


def test_enhance_goal() -> None:
    assert enhance_goal("Explain this", "foo.py") == "Explain this (file: foo.py)"
    assert enhance_goal("what does it do", "foo.py") == "what does it do (file: foo.py)"
    assert enhance_goal("write a parser", "foo.py") == "write a parser"
    assert enhance_goal("explain this", None) == "explain this"


def test_extract_goal_takes_latest_user_message() -> None:
    messages = [
        {"role": "user", "content": "first"},
        {"role": "assistant", "content": "reply"},
        {"role": "user", "content": [{"type": "image"}, {"type": "text", "text": "second"}]},
        {"role": "system", "content": "ignored"},
    ]
    assert extract_goal(messages) == "second"
    assert extract_goal([{"role": "user", "content": ["plain"]}]) == "plain"
    assert extract_goal([{"role": "assistant", "content": "x"}]) == ""


def test_selected_files_come_from_context_messages() -> None:
    messages = [
        {"role": "user", "content": '<file path="a.py" language="python">a</file>'},
        {"role": "user", "is_context": True, "content": '<file path="b.py" language="python">b</file>'},
    ]
    assert [f.file_path for f in selected_files(messages)] == ["b.py"]
