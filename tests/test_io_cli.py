"""Tests for context documents, result files and the command-line interface."""

import json
from unittest.mock import patch

import numpy as np
import pytest
import yaml
from click.testing import CliRunner

from filamentgroup.cli import cli
from filamentgroup.core.context import GroupMode, NozzleVolumeType
from filamentgroup.io.context_loader import context_from_dict, context_to_dict, load_context, save_result

from conftest import block_flush, dual_nozzle_heads, make_context, spool


def _document():
    return {
        "model": {
            "flush_matrix": block_flush(4, [{0, 1}, {2, 3}]).tolist(),
            "layer_filaments": [[0, 1, 2, 3]],
            "filaments": [
                {"id": "GFA00", "color": "#FF0000"},
                {"id": "GFA01", "color": "#00FF00"},
                {"id": "GFS02", "color": "#0000FF", "is_support": True, "usage_type": "support_only"},
                {"id": "GFA03", "color": "#FFFF00", "type": "PETG"},
            ],
            "unprintable_filaments": [[], [3]],
            "unprintable_volumes": {"1": ["high_flow"]},
        },
        "group": {"mode": "flush"},
        "machine": {"max_group_size": [16, 16], "master_extruder_id": 1},
        "speed": {"filament_print_time": {"0": {"0": 1.5, "1": 2.0}}},
    }


class TestContextDocuments:
    """Test parsing and writing context documents."""

    def test_load_yaml(self, tmp_path):
        path = tmp_path / "context.yaml"
        path.write_text(yaml.safe_dump(_document()))

        ctx = load_context(path)

        assert ctx.model_info.flush_matrix.shape == (2, 4, 4)
        assert ctx.group_info.total_filament_num == 4
        assert ctx.group_info.mode is GroupMode.FLUSH
        assert ctx.model_info.filament_ids[2] == "GFS02"
        assert ctx.model_info.filament_info[2].is_support
        assert ctx.model_info.filament_info[3].type == "PETG"
        assert ctx.model_info.unprintable_filaments == [set(), {3}]
        assert ctx.model_info.unprintable_volumes == {1: {NozzleVolumeType.HIGH_FLOW}}
        assert ctx.machine_info.master_extruder_id == 1
        assert ctx.speed_info.filament_print_time == {0: {0: 1.5, 1: 2.0}}
        assert not ctx.is_multi_nozzle

    def test_load_json(self, tmp_path):
        path = tmp_path / "context.json"
        path.write_text(json.dumps(_document()))
        assert load_context(path).model_info.layer_filaments == [[0, 1, 2, 3]]

    def test_missing_field(self):
        document = _document()
        del document["model"]["layer_filaments"]
        with pytest.raises(ValueError, match="layer_filaments"):
            context_from_dict(document)

    def test_invalid_enum(self):
        document = _document()
        document["group"]["mode"] = "fastest"
        with pytest.raises(ValueError, match="Invalid GroupMode"):
            context_from_dict(document)

    def test_non_mapping_document(self, tmp_path):
        path = tmp_path / "context.yaml"
        path.write_text("- 1\n- 2\n")
        with pytest.raises(ValueError, match="mapping"):
            load_context(path)

    def test_written_context_reads_back(self):
        ctx = make_context(
            block_flush(4, [{0, 1}, {2, 3}]),
            [[0, 1], [2, 3]],
            spools=[[spool("#FF0000", 0)], [spool("#0000FF", 1, is_support=True)]],
            mode=GroupMode.MATCH,
            nozzles=dual_nozzle_heads(NozzleVolumeType.HIGH_FLOW),
        )

        restored = context_from_dict(context_to_dict(ctx))

        np.testing.assert_array_equal(restored.model_info.flush_matrix, ctx.model_info.flush_matrix)
        assert restored.group_info.mode is GroupMode.MATCH
        assert restored.model_info.filament_ids == ctx.model_info.filament_ids
        assert restored.machine_info.machine_filament_info[1][0].is_support
        assert restored.machine_info.machine_filament_info[1][0].extruder_id == 1
        assert restored.nozzle_info.extruder_nozzle_list == {0: [0, 1], 1: [2, 3]}
        assert restored.nozzle_info.nozzle_list[3].volume_type is NozzleVolumeType.HIGH_FLOW
        assert restored.is_multi_nozzle


class TestSaveResult:
    """Test result files."""

    def test_one_based_labels(self, tmp_path):
        path = tmp_path / "out" / "result.json"
        save_result(path, [0, 1, 1], cost=42, one_based=True)
        assert json.loads(path.read_text()) == {"labels": [1, 2, 2], "cost": 42.0}

    def test_without_cost(self, tmp_path):
        path = tmp_path / "result.json"
        save_result(path, [1, 0])
        assert json.loads(path.read_text()) == {"labels": [1, 0]}


@pytest.fixture
def runner():
    with patch("filamentgroup.cli.setup_logging"):
        yield CliRunner()


class TestCli:
    """Test the command-line interface."""

    def test_version(self, runner):
        result = runner.invoke(cli, ["version"])
        assert result.exit_code == 0
        assert "FilamentGroup Version" in result.output

    def test_solve_writes_result(self, runner, tmp_path):
        context_file = tmp_path / "context.yaml"
        context_file.write_text(yaml.safe_dump(_document()))
        output = tmp_path / "result.json"

        result = runner.invoke(cli, ["solve", str(context_file), "--output", str(output), "--timeout-ms", "200"])

        assert result.exit_code == 0, result.output
        written = json.loads(output.read_text())
        assert len(written["labels"]) == 4
        assert written["labels"][0] == written["labels"][1]
        assert written["labels"][2] == written["labels"][3]
        assert written["labels"][3] == 0
        assert written["cost"] == pytest.approx(20.0)

    def test_solve_quiet_match_mode(self, runner, tmp_path):
        document = _document()
        document["machine"]["spools"] = [[{"color": "#FF0000"}], [{"color": "#FFFF00", "type": "PETG"}]]
        context_file = tmp_path / "context.json"
        context_file.write_text(json.dumps(document))
        output = tmp_path / "result.json"

        result = runner.invoke(cli, ["-q", "solve", str(context_file), "--mode", "match", "-o", str(output)])

        assert result.exit_code == 0, result.output
        assert "Filament Grouping" not in result.output
        assert len(json.loads(output.read_text())["labels"]) == 4

    def test_solve_rejects_invalid_config(self, runner, tmp_path):
        context_file = tmp_path / "context.yaml"
        context_file.write_text(yaml.safe_dump(_document()))

        result = runner.invoke(cli, ["solve", str(context_file), "--timeout-ms", "0"])

        assert result.exit_code != 0
        assert "Invalid configuration" in result.output

    def test_solve_reports_bad_context(self, runner, tmp_path):
        context_file = tmp_path / "context.yaml"
        context_file.write_text(yaml.safe_dump({"group": {}}))

        result = runner.invoke(cli, ["solve", str(context_file)])

        assert result.exit_code == 1

    def test_init_config(self, runner, tmp_path):
        output = tmp_path / "config.yaml"

        result = runner.invoke(cli, ["init-config", "--output", str(output), "--profile", "fast"])

        assert result.exit_code == 0
        saved = yaml.safe_load(output.read_text())
        assert saved["grouping"]["pam_timeout_ms"] == 100
