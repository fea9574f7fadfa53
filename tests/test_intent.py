"""
Tests for file-creation intent extraction.
"""

from pathlib import Path

from relay_agent.llm.intent import FileCreationIntentExtractor, detect_language, extension_for


def test_extension_for_language_and_alias():
    """Test language names and extensions both resolve."""
    assert extension_for("python") == "py"
    assert extension_for("JavaScript") == "js"
    assert extension_for("yml") == "yaml"
    assert extension_for("brainfuck") is None


def test_detect_language():
    """Test guessing a language for unlabeled code."""
    assert detect_language("<div>hi</div>") == "html"
    assert detect_language('{"a": 1}') == "json"
    assert detect_language("def main():\n    pass") == "python"
    assert detect_language("plain words") is None


def test_extract_full_html_document():
    """Test that a complete HTML document is written to an html file."""
    extractor = FileCreationIntentExtractor(working_dir="/work")
    text = "Sure, save this as 'landing.html':\n<!DOCTYPE html><html><body>Hi</body></html>"

    calls = extractor.extract(text)

    assert len(calls) == 1
    assert calls[0].name == "write_file"
    assert calls[0].id.startswith("call_")
    assert calls[0].args["file_path"] == str(Path("/work/generated/landing.html"))
    assert calls[0].args["content"] == "<!DOCTYPE html><html><body>Hi</body></html>"


def test_extract_keeps_relative_directories():
    """Test that names with a directory are resolved under the working directory."""
    extractor = FileCreationIntentExtractor(working_dir="/work")
    text = "Create src/app.py:\n```python\nprint('hi')\n```"

    calls = extractor.extract(text)

    assert calls[0].args["file_path"] == str(Path("/work/src/app.py"))
    assert calls[0].args["content"] == "print('hi')"


def test_extract_unlabeled_block_generates_name():
    """Test that an unnamed snippet gets a generated file name."""
    extractor = FileCreationIntentExtractor(working_dir="/work")
    text = "Here you go:\n```\nconsole.log('x')\n```"

    calls = extractor.extract(text)

    path = Path(calls[0].args["file_path"])
    assert path.parent == Path("/work/generated")
    assert path.name.startswith("generated_")
    assert path.suffix == ".js"


def test_extract_plain_text_yields_nothing():
    """Test that answers without code produce no calls."""
    extractor = FileCreationIntentExtractor()

    assert extractor.extract("The capital of France is Paris.") == []
