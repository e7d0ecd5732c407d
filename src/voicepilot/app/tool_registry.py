"""
Tool Registry

The fixed set of functions the generative model may call instead of answering
in free text. The registry is built once at startup and never mutated; adding
a function means building a new registry.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, Mapping, Optional

from google.genai import types


# ============================================================================
# Exported Constants
# ============================================================================

GET_CAMERA_IMAGE = "getCameraImage"
OPEN_PHONE_GALLERY = "openPhoneGallery"
GET_WEATHER = "getWeather"
GET_TIME = "getTime"
MAKE_CALL = "makeCall"

_SCHEMA_TYPES = {
    "string": types.Type.STRING,
    "number": types.Type.NUMBER,
    "integer": types.Type.INTEGER,
    "boolean": types.Type.BOOLEAN,
}


@dataclass(frozen=True)
class ParameterSpec:
    type: str
    description: str
    required: bool = False


@dataclass(frozen=True)
class ToolDeclaration:
    name: str
    description: str
    parameters: Mapping[str, ParameterSpec] = field(default_factory=dict)

    def __post_init__(self):
        # Freeze the parameter map so a shared declaration can't be edited
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    @property
    def required(self):
        return [name for name, spec in self.parameters.items() if spec.required]

    def to_function_declaration(self) -> types.FunctionDeclaration:
        schema: Optional[types.Schema] = None
        if self.parameters:
            schema = types.Schema(
                type=types.Type.OBJECT,
                properties={
                    name: types.Schema(type=_SCHEMA_TYPES[spec.type], description=spec.description)
                    for name, spec in self.parameters.items()
                },
                required=self.required,
            )
        return types.FunctionDeclaration(
            name=self.name,
            description=self.description,
            parameters=schema,
        )


class ToolRegistry(Mapping[str, ToolDeclaration]):
    """Read-only name -> declaration mapping."""

    def __init__(self, declarations: Iterable[ToolDeclaration]):
        table: Dict[str, ToolDeclaration] = {}
        for declaration in declarations:
            if declaration.name in table:
                raise ValueError(f"Duplicate tool name: {declaration.name}")
            if declaration.parameters:
                unknown = [s.type for s in declaration.parameters.values() if s.type not in _SCHEMA_TYPES]
                if unknown:
                    raise ValueError(f"Unsupported parameter type(s) {unknown} in {declaration.name}")
            table[declaration.name] = declaration
        self._tools = MappingProxyType(table)

    def __getitem__(self, name: str) -> ToolDeclaration:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def to_genai_tool(self) -> types.Tool:
        return types.Tool(
            function_declarations=[d.to_function_declaration() for d in self._tools.values()]
        )


def build_default_registry() -> ToolRegistry:
    return ToolRegistry([
        ToolDeclaration(
            name=GET_CAMERA_IMAGE,
            description="Function to open the camera",
        ),
        ToolDeclaration(
            name=OPEN_PHONE_GALLERY,
            description="Function to open the gallery",
        ),
        ToolDeclaration(
            name=GET_WEATHER,
            description="Get current weather information for a city",
            parameters={
                "city": ParameterSpec("string", "The name of the city to get weather for", required=True),
            },
        ),
        ToolDeclaration(
            name=GET_TIME,
            description="Get the current time",
        ),
        ToolDeclaration(
            name=MAKE_CALL,
            description="Make a phone call to a contact",
            parameters={
                "contactName": ParameterSpec("string", "The name of the contact to call", required=True),
            },
        ),
    ])
