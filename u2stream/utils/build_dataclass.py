"""Build option dataclasses from parsed arguments."""

import argparse
import dataclasses


def build_dataclass(dataclass, args: argparse.Namespace):
    """Build `dataclass` from the attributes of `args` that match its fields.

    Fields missing from `args` keep their defaults.

    """
    kwargs = {}
    for field in dataclasses.fields(dataclass):
        if not hasattr(args, field.name):
            if field.default is dataclasses.MISSING and (
                field.default_factory is dataclasses.MISSING
            ):
                raise ValueError(
                    f"args doesn't have {field.name}. "
                    "You need to set it to ArgumentsParser"
                )
            continue
        kwargs[field.name] = getattr(args, field.name)
    return dataclass(**kwargs)
