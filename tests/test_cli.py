from pathlib import Path

import pytest
import yaml

from snpflow.cli.pipeline import _read_config_yml, _resolve_run_params
from snpflow.cli.util import (
    fetch_executables,
    load_default_dict,
    parse_fq_id,
    render_luigi_log_cfg,
    write_config_yml,
)


@pytest.fixture
def config() -> dict:
    return load_default_dict(stem="example_snpflow")


def _write(tmp_path: Path, config: dict) -> Path:
    p = tmp_path.joinpath("snpflow.yml")
    p.write_text(yaml.dump(config))
    return p


@pytest.mark.parametrize(
    "fq_path, expected",
    [
        ("/data/sample01.R1.fq.gz", "sample01"),
        ("sample01_R2.fastq.bz2", "sample01"),
        ("sample_1.fastq.gz", "sample"),
        ("lane_read1.fq", "lane"),
        ("x_R1_001.fastq.gz", "x"),
        ("plain.fq.gz", "plain"),
    ],
)
def test_parse_fq_id(fq_path, expected):
    assert parse_fq_id(fq_path) == expected


def test_write_config_yml_copies_the_example(tmp_path: Path, config):
    p = tmp_path.joinpath("snpflow.yml")
    write_config_yml(path=p)
    assert yaml.safe_load(p.read_text()) == config
    p.write_text("edited: true\n")
    write_config_yml(path=p)
    assert p.read_text() == "edited: true\n"


def test_example_config_is_valid(tmp_path: Path, config):
    assert _read_config_yml(_write(tmp_path, config)) == config
    assert config["resources"] == {"cpu_heavy": 2, "memory_heavy": 1, "gpu": 1}


@pytest.mark.parametrize(
    "update, error",
    [
        ({"reference": None}, ValueError),
        ({"reference": ["ref.fa"]}, TypeError),
        ({"sample": "sample01"}, TypeError),
        ({"chunk_size": 0}, ValueError),
        ({"chunk_size": "10"}, TypeError),
        ({"resources": {"cpu_heavy": 0}}, ValueError),
        ({"resources": ["cpu_heavy"]}, TypeError),
        ({"publish_mode": "move"}, ValueError),
    ],
)
def test_invalid_config_is_rejected(tmp_path: Path, config, update, error):
    with pytest.raises(error):
        _read_config_yml(_write(tmp_path, {**config, **update}))


@pytest.mark.parametrize(
    "fq, error",
    [
        (["a.R1.fq.gz"], ValueError),
        (["a.R1.fq.gz", "a.R1.fq.gz"], ValueError),
        (["a.R1.fq", "a.R2.fq"], ValueError),
        ("a.R1.fq.gz", TypeError),
    ],
)
def test_invalid_fastq_list_is_rejected(tmp_path: Path, config, fq, error):
    config["sample"]["fq"] = fq
    with pytest.raises(error):
        _read_config_yml(_write(tmp_path, config))


def test_invalid_read_group_key_is_rejected(tmp_path: Path, config):
    config["sample"]["read_group"] = {"platform": "ILLUMINA"}
    with pytest.raises(ValueError, match="read group key"):
        _read_config_yml(_write(tmp_path, config))


def test_known_sites_must_be_a_list(tmp_path: Path, config):
    config["reference"]["known_sites_vcf"] = "/path/to/dbsnp.vcf.gz"
    with pytest.raises(ValueError):
        _read_config_yml(_write(tmp_path, config))


def test_run_params_resolve_input_paths(tmp_path: Path, config):
    tmp_path = tmp_path.resolve()
    for name in [
        "ref.fa",
        "dbsnp.vcf.gz",
        "host.1.bt2",
        "s1_R1.fastq.gz",
        "s1_R2.fastq.gz",
    ]:
        tmp_path.joinpath(name).write_text("x\n")
    config["reference"] = {
        "fasta": str(tmp_path.joinpath("ref.fa")),
        "known_sites_vcf": [str(tmp_path.joinpath("dbsnp.vcf.gz"))],
        "contaminant_index": str(tmp_path.joinpath("host")),
    }
    config["sample"] = {
        "fq": [str(tmp_path.joinpath(f"s1_R{i}.fastq.gz")) for i in (1, 2)],
        "read_group": {"PL": "ILLUMINA"},
    }
    params = _resolve_run_params(config)
    assert params["fasta"] == str(tmp_path.joinpath("ref.fa"))
    assert params["contaminant_index"] == str(tmp_path.joinpath("host"))
    assert params["fq_r2"] == str(tmp_path.joinpath("s1_R2.fastq.gz"))
    assert params["sample_name"] == "s1"
    assert params["chunk_size"] == 10_000_000
    assert params["min_mapping_quality"] == 20
    assert params["read_group"].startswith("@RG\\tID:0\\t")
    assert params["read_group"].endswith("\\tSM:s1")


def test_run_params_reject_a_missing_file(tmp_path: Path, config):
    with pytest.raises(FileNotFoundError):
        _resolve_run_params(config)


def test_fetch_executables(tmp_path: Path, monkeypatch):
    tmp_path = tmp_path.resolve()
    tool = tmp_path.joinpath("mytool")
    tool.write_text("#!/bin/sh\n")
    tool.chmod(0o755)
    monkeypatch.setenv("PATH", str(tmp_path))
    assert fetch_executables(["mytool"]) == {"mytool": str(tool)}
    assert fetch_executables(["mytool", "absent"], ignore_errors=True) == {
        "mytool": str(tool),
        "absent": None,
    }
    with pytest.raises(RuntimeError, match="absent"):
        fetch_executables(["mytool", "absent"])


def test_render_luigi_log_cfg(tmp_path: Path):
    tmp_path = tmp_path.resolve()
    cfg = tmp_path.joinpath("log", "luigi.log.cfg")
    log_txt = render_luigi_log_cfg(
        log_cfg_path=cfg, run_id="run1", console_log_level="INFO"
    )
    assert log_txt == str(tmp_path.joinpath("log", "luigi.run1.DEBUG.log.txt"))
    rendered = cfg.read_text()
    assert f"args=('{log_txt}', 'a')" in rendered
    assert "level=INFO" in rendered
