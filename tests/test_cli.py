import json
import subprocess
import sys
from pathlib import Path


_SCRIPT = Path(__file__).resolve().parents[1] / "ssa_lift.py"


def _write_stream(base: Path) -> Path:
    document = {
        "entry": "0x1000",
        "operations": {
            "0x1000": [
                {"kind": "compare", "dest": "tmp_zf", "opcode": "eq", "operands": ["rdi", "0"]},
                {"kind": "branch", "operands": ["tmp_zf"]},
            ],
            "0x1004": [{"kind": "assign", "dest": "rax", "operands": ["1"]}, {"kind": "branch"}],
            "0x1010": [{"kind": "assign", "dest": "rax", "operands": ["2"]}],
            "0x1014": [],
        },
        "transfers": [
            {"source": "0x1000", "kind": "cbranch-true", "target": "0x1010"},
            {"source": "0x1004", "kind": "jump", "target": "0x1014"},
            {"source": "0x1014", "kind": "return", "target": None},
        ],
    }
    path = base / "sample.json"
    path.write_text(json.dumps(document, indent=2), "utf-8")
    return path


def _write_knowledge(base: Path) -> Path:
    path = base / "knowledge.json"
    path.write_text(json.dumps({"pipeline": {"max_iterations": 8}}), "utf-8")
    return path


def _run(*args: str) -> subprocess.CompletedProcess:
    return subprocess.run(
        [sys.executable, str(_SCRIPT), *args],
        capture_output=True,
        text=True,
    )


def test_cli_writes_ir_and_json(tmp_path: Path) -> None:
    stream_path = _write_stream(tmp_path)
    knowledge_path = _write_knowledge(tmp_path)
    json_path = tmp_path / "graph.json"

    result = _run(
        str(stream_path),
        "--knowledge-base",
        str(knowledge_path),
        "--json-out",
        str(json_path),
        "--validate",
    )
    assert result.returncode == 0, result.stderr

    assert "ir written to" in result.stdout
    assert "UnresolvedStorage: 1" in result.stdout
    ir_output = stream_path.with_suffix(".ir.txt")
    assert ir_output.exists()
    ir_text = ir_output.read_text("utf-8")
    assert "copy(" in ir_text
    assert "= phi" not in ir_text

    payload = json.loads(json_path.read_text("utf-8"))
    assert payload["blocks"]


def test_cli_keep_ssa(tmp_path: Path) -> None:
    stream_path = _write_stream(tmp_path)
    ir_path = tmp_path / "custom.ir.txt"
    result = _run(str(stream_path), "--keep-ssa", "--ir-out", str(ir_path))
    assert result.returncode == 0, result.stderr
    assert "= phi [" in ir_path.read_text("utf-8")


def test_cli_reports_malformed_input(tmp_path: Path) -> None:
    path = tmp_path / "broken.json"
    path.write_text(json.dumps({"operations": {}}), "utf-8")
    result = _run(str(path))
    assert result.returncode == 1
    assert result.stderr.startswith("error:")
