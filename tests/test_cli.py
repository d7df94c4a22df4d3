import json
from pathlib import Path

import deckfill.cli as cli
import deckfill.core as core


def _write_template(tmp_path: Path) -> Path:
    path = tmp_path / "template.html"
    path.write_text(
        """<html><body><div class="slides">
<section id="products">
  <h2>Products {{Year}}</h2>
  <p>{{Items[0].Name}}</p>
  <p>{{Items[1].Name}}</p>
</section>
<section id="closing"><p>Thanks {{customer}}</p></section>
</div></body></html>\n""",
        encoding="utf-8",
    )
    return path


def _write_data(tmp_path: Path, count: int = 5) -> Path:
    path = tmp_path / "data.json"
    path.write_text(
        json.dumps({"customer": "ACME", "Items": [{"Name": f"Item {i + 1}"} for i in range(count)]}),
        encoding="utf-8",
    )
    return path


def _args(template: Path, data: Path, output: Path, *extra: str):
    return ["--template", str(template), "--data", str(data), "--output", str(output), *extra]


def test_version_flags_print_version(capsys):
    assert cli.main(["--version"]) == 0
    out = capsys.readouterr().out.strip()
    assert out == cli.__version__

    assert cli.main(["--ver"]) == 0
    out = capsys.readouterr().out.strip()
    assert out == cli.__version__


def test_help_and_no_args_show_usage(capsys):
    assert cli.main([]) == 0
    out = capsys.readouterr().out
    assert "Usage:" in out
    assert "--template" in out

    assert cli.main(["--help"]) == 0
    out = capsys.readouterr().out
    assert "--max-pages" in out


def test_unknown_option_returns_2(capsys):
    assert cli.main(["--bogus"]) == 2
    assert "Usage:" in capsys.readouterr().out


def test_missing_required_options_returns_6(tmp_path, capsys):
    assert cli.main(["--template", str(_write_template(tmp_path))]) == core.EXIT_INVALID_ARGS
    assert "required" in capsys.readouterr().err


def test_invalid_numeric_options_return_6(tmp_path, capsys):
    template = _write_template(tmp_path)
    data = _write_data(tmp_path)
    output = tmp_path / "out.html"

    assert cli.main(_args(template, data, output, "--max-pages", "0")) == core.EXIT_INVALID_ARGS
    assert "--max-pages" in capsys.readouterr().err
    assert cli.main(_args(template, data, output, "--items-per-page-ceiling", "-1")) == core.EXIT_INVALID_ARGS
    assert not output.exists()


def test_missing_inputs_return_6(tmp_path, capsys):
    template = _write_template(tmp_path)
    data = _write_data(tmp_path)

    assert cli.main(_args(tmp_path / "nope.html", data, tmp_path / "out.html")) == core.EXIT_INVALID_ARGS
    assert "Template deck not found" in capsys.readouterr().err
    assert cli.main(_args(template, tmp_path / "nope.json", tmp_path / "out.html")) == core.EXIT_INVALID_ARGS
    assert "Data file not found" in capsys.readouterr().err


def test_invalid_data_file_returns_6(tmp_path, capsys):
    template = _write_template(tmp_path)
    data = tmp_path / "data.json"
    data.write_text("[1, 2, 3]", encoding="utf-8")

    assert cli.main(_args(template, data, tmp_path / "out.html")) == core.EXIT_INVALID_ARGS
    assert "JSON object" in capsys.readouterr().err


def test_fill_creates_output_deck(monkeypatch, tmp_path):
    monkeypatch.setenv(core.TEST_MODE_ENV, "1")
    template = _write_template(tmp_path)
    data = _write_data(tmp_path, count=5)
    output = tmp_path / "out" / "deck.html"

    assert cli.main(_args(template, data, output)) == 0

    html = output.read_text(encoding="utf-8")
    assert html.count("<section") == 4
    assert 'id="products__3"' in html
    assert "Item 5" in html
    assert "Products 2024" in html
    assert "Thanks ACME" in html
    assert "{{" not in html


def test_existing_output_requires_force(tmp_path, capsys):
    template = _write_template(tmp_path)
    data = _write_data(tmp_path)
    output = tmp_path / "deck.html"
    output.write_text("old", encoding="utf-8")

    assert cli.main(_args(template, data, output)) == core.EXIT_OUTPUT
    assert "--force" in capsys.readouterr().err
    assert output.read_text(encoding="utf-8") == "old"

    assert cli.main(_args(template, data, output, "--force")) == 0
    assert "Item 1" in output.read_text(encoding="utf-8")


def test_output_directory_returns_7(tmp_path):
    template = _write_template(tmp_path)
    data = _write_data(tmp_path)
    output = tmp_path / "outdir"
    output.mkdir()

    assert cli.main(_args(template, data, output)) == core.EXIT_OUTPUT


def test_report_records_truncation(tmp_path):
    template = _write_template(tmp_path)
    data = _write_data(tmp_path, count=9)
    output = tmp_path / "deck.html"
    report_path = tmp_path / "report.json"

    assert cli.main(_args(template, data, output, "--max-pages", "2", "--report", str(report_path))) == 0

    report = json.loads(report_path.read_text(encoding="utf-8"))
    assert report["truncated"] is True
    assert report["partial"] is False
    products = report["units"][0]
    assert products["pages"] == 2
    assert products["plans"]["Items"]["required_pages"] == 5
    assert products["state"] == "DONE"
    assert output.read_text(encoding="utf-8").count("<section") == 3


def test_config_file_overrides_defaults(tmp_path, capsys):
    template = _write_template(tmp_path)
    data = _write_data(tmp_path, count=9)
    output = tmp_path / "deck.html"
    config = tmp_path / "config.json"
    config.write_text(json.dumps({"max_pages_from_template": 3, "register_globals": False}), encoding="utf-8")

    assert cli.main(_args(template, data, output, "--config", str(config))) == 0
    html = output.read_text(encoding="utf-8")
    assert html.count("<section") == 4
    assert "Products {{Year}}" in html

    config.write_text(json.dumps({"pages": 3}), encoding="utf-8")
    assert cli.main(_args(template, data, output, "--config", str(config), "--force")) == core.EXIT_INVALID_ARGS
    assert "unknown key" in capsys.readouterr().err


def test_partial_generation_returns_9(monkeypatch, tmp_path, capsys):
    template = _write_template(tmp_path)
    data = _write_data(tmp_path)

    def fake_run_pipeline(**kwargs):
        unit = core.UnitReport(unit_id=256, name="products", states=[core.UnitState.PARTIAL])
        return core.DocumentReport(units=[unit])

    monkeypatch.setattr(core, "run_pipeline", fake_run_pipeline)

    assert cli.main(_args(template, data, tmp_path / "deck.html")) == core.EXIT_PARTIAL
    assert "partially" in capsys.readouterr().err
