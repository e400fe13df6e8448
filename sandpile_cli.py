""" Command line front end: drop a pile of sand, let it settle, save a picture.

Usage:

    sandpile SIZE PILE [--agenda stack|queue|unique] [--output sandpile.png]
                       [--cell-size N] [--config FILE] [--log-level LEVEL]
"""

import argparse
import json
import logging
import sys
import warnings
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Optional

from sandpile import (
    AGENDAS,
    ContextTransformer,
    ListenerGroup,
    Sandpile,
    StatisticsCollector,
    make_agenda,
    save_image,
)

logger = logging.getLogger("sandpile_cli")

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


class ConfigError(Exception):
    """ The configuration file is missing or malformed. """


@dataclass(frozen=True)
class SimulationConfig(object):
    """ Settings that do not describe the pile itself. """
    agenda: str = "unique"
    output: str = "sandpile.png"
    cell_size: int = 1
    log_level: str = "INFO"


def load_config(path: str | Path | None = None) -> SimulationConfig:
    """ Loads settings from a JSON object, falling back to the defaults.

    :param path: The JSON file. If None the defaults are returned.
    :return: The merged settings.
    """
    config = SimulationConfig()
    if path is None:
        return config

    p = Path(path)
    try:
        with open(p, "r") as f:
            data = json.load(f)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {p}") from None
    except json.JSONDecodeError as e:
        raise ConfigError(f"Config file {p} is not valid JSON: {e}") from None

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {p} must hold a JSON object")

    known = {f.name: f.type for f in fields(SimulationConfig)}
    for key in sorted(set(data) - set(known)):
        warnings.warn(f"Ignoring unknown config key {key!r} in {p}")

    values = {k: v for k, v in data.items() if k in known}
    for key, value in values.items():
        # JSON booleans would pass for ints otherwise.
        if isinstance(value, bool) or not isinstance(value, known[key]):
            raise ConfigError(
                f"Config key {key!r} in {p} must be {known[key].__name__}, "
                f"got {value!r}")
    if values.get("agenda", config.agenda) not in AGENDAS:
        raise ConfigError(f"Unknown agenda {values['agenda']!r} in {p}, "
                          f"expected one of {sorted(AGENDAS)}")
    if values.get("log_level", config.log_level) not in LOG_LEVELS:
        raise ConfigError(f"Unknown log level {values['log_level']!r} in "
                          f"{p}, expected one of {LOG_LEVELS}")
    return replace(config, **values)


def setup_logging(level: int | str = logging.INFO,
                  log_file: Optional[str] = None) -> None:
    """ Configures the loggers of the sandpile modules.

    :param level: Logging level, e.g. logging.DEBUG or "DEBUG".
    :param log_file: Optional path to also save the logs to.
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S")
    for name in ("sandpile", "sandpile_cli"):
        package_logger = logging.getLogger(name)
        package_logger.setLevel(level)

        # Avoid duplicate logs when called more than once.
        for handler in list(package_logger.handlers):
            package_logger.removeHandler(handler)
            handler.close()

        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        package_logger.addHandler(console_handler)

        if log_file:
            file_handler = logging.FileHandler(log_file, mode="a",
                                               encoding="utf-8")
            file_handler.setFormatter(formatter)
            package_logger.addHandler(file_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sandpile",
        description="Drop a pile of sand on the centre of a square board, "
                    "topple it until stable and save the result as a PNG.")
    parser.add_argument("size", type=int, help="number of rows and columns")
    parser.add_argument("pile", type=int,
                        help="number of grains dropped on the centre")
    parser.add_argument("--agenda", choices=sorted(AGENDAS),
                        help="order in which unstable cells are toppled")
    parser.add_argument("-o", "--output", help="path of the PNG to write")
    parser.add_argument("--cell-size", type=int,
                        help="pixels per cell side in the image")
    parser.add_argument("--config", help="JSON file with default settings")
    parser.add_argument("--log-level", choices=LOG_LEVELS)
    parser.add_argument("--log-file", help="also write the logs to this file")
    return parser


def main(argv: list[str] | None = None) -> int:
    """ Runs the command line program.

    :param argv: Arguments without the program name. Defaults to sys.argv.
    :return: The exit status.
    """
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        setup_logging()
        logger.error("%s", e)
        return 1

    # Flags given on the command line win over the config file.
    overrides = {
        "agenda": args.agenda,
        "output": args.output,
        "cell_size": args.cell_size,
        "log_level": args.log_level,
    }
    config = replace(config, **{k: v for k, v in overrides.items()
                                if v is not None})
    setup_logging(config.log_level, args.log_file)

    topples = StatisticsCollector(ContextTransformer.topple_count,
                                  store_history=False)
    loss = StatisticsCollector(ContextTransformer.sand_loss,
                               store_history=False)

    try:
        engine = Sandpile.create(args.size, args.pile,
                                 agenda=make_agenda(config.agenda))
        engine.add_listener(ListenerGroup([topples, loss]))
        board = engine.stabilize()
        path = save_image(board, config.output, config.cell_size)
    except ValueError as e:
        # SandpileError is a ValueError too.
        logger.error("%s", e)
        return 1

    logger.info("%d topples, %d grains dissipated, %d grains left on the "
                "board", topples.value, loss.value,
                board.total_grains())
    logger.info("Wrote %s", path)
    return 0


if __name__ == "__main__":
    sys.exit(main())
