# tests/test_cli.py
"""
Tests for the ``abi-recovery`` command-line interface.
"""

import pytest

from abi_recovery.__main__ import (
    EXIT_ERROR,
    EXIT_INFRA,
    EXIT_NOT_CONVERGED,
    EXIT_OK,
    main,
)
from tests.conftest import HEADER, LEAF_READS_R0, MUTUAL_RECURSION


def _write(tmp_path, body, name="prog.sexp"):
    path = tmp_path / name
    path.write_text(f"(program {HEADER} {body})", encoding="utf-8")
    return path


class TestMain:

    def test_text_report(self, tmp_path, capsys):
        path = _write(tmp_path, LEAF_READS_R0)
        assert main([str(path)]) == EXIT_OK
        out = capsys.readouterr().out
        assert "Function f0 [Regular]" in out

    def test_csv_to_file(self, tmp_path):
        path = _write(tmp_path, LEAF_READS_R0)
        dest = tmp_path / "out.csv"
        assert main([str(path), "--format", "csv", "-o", str(dest)]) == EXIT_OK
        assert dest.read_text(encoding="utf-8").startswith("name,site,kind,fso,")

    def test_dot(self, tmp_path, capsys):
        path = _write(tmp_path, MUTUAL_RECURSION)
        assert main([str(path), "-f", "dot"]) == EXIT_OK
        assert capsys.readouterr().out.startswith("digraph CallGraph {")

    def test_brief(self, tmp_path, capsys):
        path = _write(tmp_path, LEAF_READS_R0)
        assert main([str(path), "--brief"]) == EXIT_OK
        assert "UsedArgumentsOfFunction" not in capsys.readouterr().out

    def test_missing_file(self, tmp_path):
        assert main([str(tmp_path / "absent.sexp")]) == EXIT_INFRA

    def test_parse_error(self, tmp_path, capsys):
        path = _write(tmp_path, "(block f (read r9) (return)) (entry f)")
        assert main([str(path)]) == EXIT_ERROR
        assert "r9" in capsys.readouterr().err

    def test_not_converged(self, tmp_path, capsys):
        path = _write(tmp_path, MUTUAL_RECURSION)
        assert main([str(path), "--max-iterations", "1"]) == EXIT_NOT_CONVERGED
        assert "NOT converged" in capsys.readouterr().out

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as info:
            main(["--version"])
        assert info.value.code == 0
        assert "abi-recovery" in capsys.readouterr().out

    def test_undecodable_input(self, tmp_path, capsys):
        path = tmp_path / "binary.sexp"
        path.write_bytes(b"(program \xff\xfe\x00)")
        assert main([str(path)]) == EXIT_ERROR
        assert "binary.sexp" in capsys.readouterr().err

    def test_unwritable_output(self, tmp_path, capsys):
        path = _write(tmp_path, LEAF_READS_R0)
        dest = tmp_path / "missing-dir" / "out.txt"
        assert main([str(path), "-o", str(dest)]) == EXIT_ERROR
        assert "cannot write output" in capsys.readouterr().err
