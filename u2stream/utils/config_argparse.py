"""ArgumentParser that reads option defaults from a yaml file."""

import argparse
from pathlib import Path

import yaml


class ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser with an automatic "--config" option.

    Keys of the yaml mapping must be option destinations of this parser;
    they become defaults and are still overridden by explicit flags.

    - Only one config file
    - yaml only
    - No type conversion of the values read from the file

    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.add_argument("--config", help="Give config file in yaml format")

    def parse_known_args(self, args=None, namespace=None):
        # First pass only looks for "--config"
        _args, _ = super().parse_known_args(args, namespace)
        if _args.config is not None:
            if not Path(_args.config).exists():
                self.error(f"No such file: {_args.config}")

            with open(_args.config, "r", encoding="utf-8") as f:
                d = yaml.safe_load(f)
            if not isinstance(d, dict):
                self.error(f"Config file has non dict value: {_args.config}")

            dests = {action.dest for action in self._actions}
            for key in d:
                if key not in dests or key == "config":
                    self.error(f"unrecognized arguments: {key} (from {_args.config})")

            self.set_defaults(**d)
        return super().parse_known_args(args, namespace)
