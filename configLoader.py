import yaml
from pydantic import ValidationError, BaseModel, ConfigDict
from yaml.nodes import ScalarNode, MappingNode
from typing import Any, Type, TypeVar
from errors import ConfigError


class StrictBaseModel(BaseModel, frozen=True):
    model_config = ConfigDict(extra="forbid")


class LineNumberLoader(yaml.SafeLoader):
    def construct_mapping(self, node: MappingNode, deep: bool = False) -> Any:
        mapping = {}
        for key_node, value_node in node.value:
            key = self.construct_object(key_node, deep=True)  # type: ignore
            value = self.construct_object(value_node, deep=True)  # type: ignore
            mapping[key] = value
            if isinstance(key_node, ScalarNode):
                # 1-based, as editors show it
                mapping[f"_line_{key}"] = key_node.start_mark.line + 1
        return mapping


def extract_field_lines(data: Any, prefix: str = "") -> dict[str, int]:
    field_lines: dict[str, int] = {}
    if isinstance(data, list):
        for idx, value in enumerate(data):
            field_lines.update(extract_field_lines(value, prefix=f"{prefix}.{idx}" if prefix else str(idx)))
        return field_lines
    if not isinstance(data, dict):
        return field_lines

    for key, value in data.items():
        if str(key).startswith("_line_"):
            continue
        full_key = f"{prefix}.{key}" if prefix else str(key)
        line_key = f"_line_{key}"
        if line_key in data:
            field_lines[full_key] = data[line_key]
        field_lines.update(extract_field_lines(value, prefix=full_key))
    return field_lines


def clean_yaml_data(data: Any) -> Any:
    if isinstance(data, list):
        return [clean_yaml_data(v) for v in data]
    if not isinstance(data, dict):
        return data
    return {k: clean_yaml_data(v) for k, v in data.items() if not str(k).startswith("_line_")}


def _closest_line(field_lines: dict[str, int], field: str) -> str:
    # Errors raised by a model validator point at the enclosing object
    while field:
        if field in field_lines:
            return str(field_lines[field])
        field = field.rpartition(".")[0]
    return "Unknown"


T = TypeVar('T', bound=BaseModel)


def load_str(yaml_str: str, cls: Type[T], *, source: str = "<string>") -> T:
    try:
        parsed_data_with_lines = yaml.load(yaml_str, Loader=LineNumberLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"{source}: invalid yaml: {e}")
    if parsed_data_with_lines is None:
        parsed_data_with_lines = {}
    if not isinstance(parsed_data_with_lines, dict):
        raise ConfigError(f"{source}: expected a mapping at the top level")

    field_lines = extract_field_lines(parsed_data_with_lines)
    parsed_data_clean = clean_yaml_data(parsed_data_with_lines)

    try:
        return cls(**parsed_data_clean)
    except ValidationError as e:
        msgs = []
        for err in e.errors():
            field = ".".join(str(x) for x in err['loc'])
            line = _closest_line(field_lines, field)
            msgs.append(f"Error in field '{field}': {err['msg']} (Line {line})")
        raise ConfigError(f"{source}: " + "; ".join(msgs))


def load(path: str, cls: Type[T]) -> T:
    try:
        with open(path) as f:
            yaml_str = f.read()
    except OSError as e:
        raise ConfigError(f"Cannot read config {path}: {e}")
    return load_str(yaml_str, cls, source=path)
