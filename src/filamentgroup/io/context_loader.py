"""Read grouping contexts from JSON/YAML documents and write results."""

import json
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Type, Union

import yaml

from ..core.context import (
    FilamentGroupContext,
    FilamentInfo,
    FilamentUsageType,
    GroupInfo,
    GroupMode,
    GroupStrategy,
    MachineFilamentInfo,
    MachineInfo,
    ModelInfo,
    NozzleGroupInfo,
    NozzleInfo,
    NozzleVolumeType,
    SpeedInfo,
)
from ..core.limits import build_extruder_nozzle_list
from ..utils.color import Color
from ..utils.logging import get_logger

logger = get_logger(__name__)


def _parse_enum(enum_cls: Type[Enum], value: Any) -> Enum:
    """Accept an enum member, its name (any case) or its value."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        name = value.strip().upper()
        if name in enum_cls.__members__:
            return enum_cls[name]
    try:
        return enum_cls(value)
    except ValueError:
        raise ValueError(
            f"Invalid {enum_cls.__name__}: {value!r}. Available: {[m.name.lower() for m in enum_cls]}"
        ) from None


def _read_document(path: Path) -> Dict[str, Any]:
    with open(path, "r") as f:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(f) or {}
        else:
            data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Context file {path} must contain a mapping")
    return data


def _filament_from_dict(data: Dict[str, Any]) -> FilamentInfo:
    return FilamentInfo(
        color=Color.from_hex(data["color"]),
        type=data.get("type", "PLA"),
        is_support=bool(data.get("is_support", False)),
        usage_type=_parse_enum(FilamentUsageType, data.get("usage_type", "model_only")),
    )


def _spool_from_dict(data: Dict[str, Any], extruder_id: int) -> MachineFilamentInfo:
    return MachineFilamentInfo(
        color=Color.from_hex(data["color"]),
        type=data.get("type", "PLA"),
        is_support=bool(data.get("is_support", False)),
        extruder_id=int(data.get("extruder_id", extruder_id)),
        is_extended=bool(data.get("is_extended", False)),
    )


def context_from_dict(data: Dict[str, Any]) -> FilamentGroupContext:
    """Build a context from its document form.

    Args:
        data: Mapping with ``model`` (required) and optional ``group``,
            ``machine``, ``speed`` and ``nozzles`` sections

    Returns:
        Parsed grouping context

    Raises:
        ValueError: If a required field is missing or malformed
    """
    try:
        model = data["model"]
        filaments = [_filament_from_dict(item) for item in model["filaments"]]
        model_info = ModelInfo(
            flush_matrix=model["flush_matrix"],
            layer_filaments=[list(map(int, layer)) for layer in model["layer_filaments"]],
            filament_info=filaments,
            filament_ids=[str(item.get("id", idx)) for idx, item in enumerate(model["filaments"])],
            unprintable_filaments=[set(map(int, group)) for group in model.get("unprintable_filaments", [])],
            unprintable_volumes={
                int(f): {_parse_enum(NozzleVolumeType, v) for v in volumes}
                for f, volumes in (model.get("unprintable_volumes") or {}).items()
            },
        )
    except KeyError as e:
        raise ValueError(f"Missing required context field: {e}") from e

    group = data.get("group") or {}
    group_info = GroupInfo(
        total_filament_num=int(group.get("total_filament_num", len(filaments))),
        max_gap_threshold=float(group.get("max_gap_threshold", 0.0)),
        mode=_parse_enum(GroupMode, group.get("mode", "flush")),
        strategy=_parse_enum(GroupStrategy, group.get("strategy", "best_fit")),
        ignore_ext_filament=bool(group.get("ignore_ext_filament", False)),
        filament_volume_map=[int(_parse_enum(NozzleVolumeType, v)) for v in group.get("filament_volume_map", [])],
    )

    machine = data.get("machine") or {}
    extruder_count = model_info.flush_matrix.shape[0]
    machine_info = MachineInfo(
        max_group_size=[int(size) for size in machine.get("max_group_size", [16] * extruder_count)],
        machine_filament_info=[
            [_spool_from_dict(spool, extruder_id) for spool in spools]
            for extruder_id, spools in enumerate(machine.get("spools", []))
        ],
        prefer_non_model_filament=[bool(v) for v in machine.get("prefer_non_model_filament", [])],
        master_extruder_id=int(machine.get("master_extruder_id", 0)),
    )

    speed = data.get("speed") or {}
    speed_info = SpeedInfo(
        filament_print_time={
            int(f): {int(e): float(t) for e, t in times.items()}
            for f, times in (speed.get("filament_print_time") or {}).items()
        },
        extruder_change_time=float(speed.get("extruder_change_time", 0.0)),
        filament_change_time=float(speed.get("filament_change_time", 0.0)),
        group_with_time=bool(speed.get("group_with_time", False)),
    )

    nozzles = [
        NozzleInfo(
            diameter=float(item.get("diameter", 0.4)),
            volume_type=_parse_enum(NozzleVolumeType, item.get("volume_type", "standard")),
            extruder_id=int(item["extruder_id"]),
            group_id=int(item.get("id", idx)),
        )
        for idx, item in enumerate(data.get("nozzles") or [])
    ]
    nozzle_info = NozzleGroupInfo(extruder_nozzle_list=build_extruder_nozzle_list(nozzles), nozzle_list=nozzles)

    return FilamentGroupContext(
        model_info=model_info,
        group_info=group_info,
        machine_info=machine_info,
        speed_info=speed_info,
        nozzle_info=nozzle_info,
    )


def load_context(path: Union[str, Path]) -> FilamentGroupContext:
    """Load a grouping context from a JSON or YAML file."""
    path = Path(path)
    ctx = context_from_dict(_read_document(path))
    logger.debug(
        f"Loaded context from {path}: {ctx.group_info.total_filament_num} filaments, "
        f"{len(ctx.model_info.layer_filaments)} layers"
    )
    return ctx


def _filament_to_dict(info: FilamentInfo, filament_id: Optional[str] = None) -> Dict[str, Any]:
    data = {
        "color": info.color.to_hex_str(include_alpha=info.color.a != 255),
        "type": info.type,
        "is_support": info.is_support,
    }
    if isinstance(info, MachineFilamentInfo):
        data["extruder_id"] = info.extruder_id
        data["is_extended"] = info.is_extended
    else:
        data["usage_type"] = info.usage_type.name.lower()
    if filament_id is not None:
        data["id"] = filament_id
    return data


def context_to_dict(ctx: FilamentGroupContext) -> Dict[str, Any]:
    """Document form of a context; :func:`context_from_dict` reads it back."""
    model = ctx.model_info
    return {
        "model": {
            "flush_matrix": model.flush_matrix.tolist(),
            "layer_filaments": [list(layer) for layer in model.layer_filaments],
            "filaments": [
                _filament_to_dict(info, model.filament_ids[idx] if idx < len(model.filament_ids) else None)
                for idx, info in enumerate(model.filament_info)
            ],
            "unprintable_filaments": [sorted(group) for group in model.unprintable_filaments],
            "unprintable_volumes": {
                str(f): sorted(v.name.lower() for v in volumes) for f, volumes in model.unprintable_volumes.items()
            },
        },
        "group": {
            "total_filament_num": ctx.group_info.total_filament_num,
            "max_gap_threshold": ctx.group_info.max_gap_threshold,
            "mode": ctx.group_info.mode.value,
            "strategy": ctx.group_info.strategy.value,
            "ignore_ext_filament": ctx.group_info.ignore_ext_filament,
            "filament_volume_map": list(ctx.group_info.filament_volume_map),
        },
        "machine": {
            "max_group_size": list(ctx.machine_info.max_group_size),
            "spools": [[_filament_to_dict(s) for s in spools] for spools in ctx.machine_info.machine_filament_info],
            "prefer_non_model_filament": list(ctx.machine_info.prefer_non_model_filament),
            "master_extruder_id": ctx.machine_info.master_extruder_id,
        },
        "speed": {
            "filament_print_time": {
                str(f): {str(e): t for e, t in times.items()}
                for f, times in ctx.speed_info.filament_print_time.items()
            },
            "extruder_change_time": ctx.speed_info.extruder_change_time,
            "filament_change_time": ctx.speed_info.filament_change_time,
            "group_with_time": ctx.speed_info.group_with_time,
        },
        "nozzles": [
            {
                "id": nozzle.group_id,
                "diameter": nozzle.diameter,
                "volume_type": nozzle.volume_type.name.lower(),
                "extruder_id": nozzle.extruder_id,
            }
            for nozzle in ctx.nozzle_info.nozzle_list
        ],
    }


def save_result(
    path: Union[str, Path],
    labels: Sequence[int],
    cost: Optional[float] = None,
    one_based: bool = False,
) -> None:
    """Write a grouping result as JSON.

    Args:
        path: Output file
        labels: Extruder or nozzle label per filament
        cost: Flush cost of the grouping, if known
        one_based: Write labels counting from 1
    """
    offset = 1 if one_based else 0
    result: Dict[str, Any] = {"labels": [int(label) + offset for label in labels]}
    if cost is not None:
        result["cost"] = float(cost)

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(result, f, indent=2)
    logger.info(f"Saved grouping result to {path}")
