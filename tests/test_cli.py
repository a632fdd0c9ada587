import pandas as pd
import pytest

from edger_py.errors import ConfigurationError
from run_analysis import main, parse_references


def _write_inputs(tmp_path, nb_counts, metadata):
    counts_path = tmp_path / "counts.csv"
    meta_path = tmp_path / "coldata.csv"
    nb_counts.to_csv(counts_path)
    metadata.to_csv(meta_path)
    return counts_path, meta_path


def test_main_writes_results(tmp_path, nb_counts, metadata):
    counts_path, meta_path = _write_inputs(tmp_path, nb_counts, metadata)
    config_path = tmp_path / "config.yaml"
    config_path.write_text("filter:\n  log_cpm_threshold: 1.0\ntesting:\n  fdr: 0.1\n")
    exclude_path = tmp_path / "exclude.txt"
    exclude_path.write_text("# mitochondrial\ngene_000\ngene_001\n")
    out = tmp_path / "out" / "de.tsv"

    code = main(["--counts", str(counts_path), "--metadata", str(meta_path),
                 "--factor", "group", "--contrast", "group[T.B]",
                 "--config", str(config_path), "--exclude", str(exclude_path),
                 "--out", str(out), "-q"])
    assert code == 0
    table = pd.read_csv(out, sep="\t", index_col=0)
    assert "gene_000" not in table.index
    assert list(table.columns[:5]) == ["logFC", "logCPM", "LR", "PValue", "FDR"]


def test_main_reference_level(tmp_path, nb_counts, metadata):
    counts_path, meta_path = _write_inputs(tmp_path, nb_counts, metadata)
    out = tmp_path / "de.tsv"
    code = main(["--counts", str(counts_path), "--metadata", str(meta_path),
                 "--factor", "group", "--reference", "group=B",
                 "--contrast", "group[T.A]", "--out", str(out), "-q"])
    assert code == 0
    assert out.exists()


def test_parse_references():
    assert parse_references(["group=B", "batch=b=2"]) == {"group": "B", "batch": "b=2"}
    for bad in ("group", "=B", "group="):
        with pytest.raises(ConfigurationError, match="factor=level"):
            parse_references([bad])


def test_main_reports_malformed_reference(tmp_path, nb_counts, metadata):
    counts_path, meta_path = _write_inputs(tmp_path, nb_counts, metadata)
    out = tmp_path / "de.tsv"
    code = main(["--counts", str(counts_path), "--metadata", str(meta_path),
                 "--factor", "group", "--reference", "group",
                 "--contrast", "group[T.B]", "--out", str(out), "-q"])
    assert code == 1
    assert not out.exists()


def test_main_reports_bad_contrast(tmp_path, nb_counts, metadata):
    counts_path, meta_path = _write_inputs(tmp_path, nb_counts, metadata)
    code = main(["--counts", str(counts_path), "--metadata", str(meta_path),
                 "--factor", "group", "--contrast", "nope",
                 "--out", str(tmp_path / "de.tsv"), "-q"])
    assert code == 1


def test_main_missing_file(tmp_path):
    code = main(["--counts", str(tmp_path / "missing.csv"), "--metadata",
                 str(tmp_path / "missing_meta.csv"), "--factor", "group",
                 "--contrast", "1", "-q"])
    assert code == 1
