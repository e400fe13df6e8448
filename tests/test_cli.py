"""Tests for the command line front end and its configuration."""

import json
import logging

import pytest

from sandpile_cli import ConfigError, SimulationConfig, load_config, main


class TestLoadConfig:
    """Test suite for load_config."""

    def test_defaults(self):
        config = load_config()
        assert config == SimulationConfig()
        assert config.agenda == "unique"
        assert config.output == "sandpile.png"

    def test_file_overrides_defaults(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"agenda": "stack", "cell_size": 3}))
        config = load_config(path)
        assert config.agenda == "stack"
        assert config.cell_size == 3
        assert config.output == "sandpile.png"

    def test_unknown_keys_warn(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"colour": "red"}))
        with pytest.warns(UserWarning, match="colour"):
            config = load_config(path)
        assert config == SimulationConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nope.json")

    def test_bad_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            load_config(path)

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("[1, 2]")
        with pytest.raises(ConfigError):
            load_config(path)

    @pytest.mark.parametrize("data,message", [
        ({"cell_size": "2"}, "must be int"),
        ({"cell_size": 1.5}, "must be int"),
        ({"cell_size": True}, "must be int"),
        ({"output": 7}, "must be str"),
        ({"agenda": "heap"}, "Unknown agenda"),
        ({"log_level": "VERBOSE"}, "Unknown log level"),
    ])
    def test_bad_values_rejected(self, tmp_path, data, message):
        """Values of the wrong type or outside the choices are refused."""
        path = tmp_path / "config.json"
        path.write_text(json.dumps(data))
        with pytest.raises(ConfigError, match=message):
            load_config(path)


class TestMain:
    """Test suite for the sandpile command."""

    def test_writes_image(self, tmp_path, caplog):
        out = tmp_path / "out.png"
        with caplog.at_level(logging.INFO):
            status = main(["11", "200", "--output", str(out)])
        assert status == 0
        assert out.exists()
        assert "topples" in caplog.text

    def test_agenda_flag(self, tmp_path):
        out = tmp_path / "out.png"
        assert main(["5", "30", "--agenda", "stack", "-o", str(out)]) == 0
        assert out.exists()

    def test_config_file_is_used(self, tmp_path):
        out = tmp_path / "from_config.png"
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"output": str(out), "cell_size": 2}))
        assert main(["5", "30", "--config", str(path)]) == 0
        assert out.exists()

    def test_non_integer_arguments_rejected(self, capsys):
        with pytest.raises(SystemExit) as excinfo:
            main(["ten", "8"])
        assert excinfo.value.code == 2
        assert "invalid int value" in capsys.readouterr().err

    def test_wrong_number_of_arguments(self):
        with pytest.raises(SystemExit) as excinfo:
            main(["10"])
        assert excinfo.value.code == 2

    def test_non_positive_size(self, tmp_path, caplog):
        out = tmp_path / "out.png"
        assert main(["0", "8", "-o", str(out)]) == 1
        assert not out.exists()
        assert "Board size must be positive" in caplog.text

    def test_negative_pile(self, tmp_path):
        out = tmp_path / "out.png"
        assert main(["5", "-3", "-o", str(out)]) == 1
        assert not out.exists()

    def test_missing_config(self, tmp_path):
        assert main(["5", "8", "--config", str(tmp_path / "nope.json")]) == 1

    @pytest.mark.parametrize("data", [{"log_level": "VERBOSE"},
                                      {"cell_size": "2"}])
    def test_bad_config_values(self, tmp_path, caplog, data):
        """A bad value in the config file is an error, not a traceback."""
        out = tmp_path / "out.png"
        path = tmp_path / "config.json"
        path.write_text(json.dumps(data))
        assert main(["5", "8", "--config", str(path), "-o", str(out)]) == 1
        assert not out.exists()
        assert "ERROR" in caplog.text

    def test_summary_counts(self, tmp_path, caplog):
        """The summary reports the topples and the grains lost off the edge."""
        out = tmp_path / "out.png"
        with caplog.at_level(logging.INFO):
            assert main(["1", "8", "-o", str(out)]) == 0
        assert "2 topples, 8 grains dissipated, 0 grains left" in caplog.text

    def test_log_file(self, tmp_path):
        log_file = tmp_path / "run.log"
        out = tmp_path / "out.png"
        assert main(["5", "30", "-o", str(out),
                     "--log-file", str(log_file)]) == 0
        assert "Wrote" in log_file.read_text()
