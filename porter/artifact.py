from datetime import datetime

from pydantic import BaseModel

PLUGIN_NAME = "ds.plugin.name"
PLUGIN_VERSION = "ds.plugin.version"
PLUGIN_PARAM_PREFIX = "ds.plugin.param."
FINALIZER_KEYS = ("ds.finalizer", "finalizer")
FINALIZER_ARGS = "ds.finalizer.args"


class PluginExecutionInfo(BaseModel):
    """Instructions for running a plugin on a delivered artifact"""

    plugin_name: str
    version: str | None = None
    parameters: dict[str, str] = {}

    @classmethod
    def from_metadata(cls, metadata: dict[str, str]) -> "PluginExecutionInfo | None":
        """Build the execution info from `ds.plugin.*` annotations, if present"""
        if PLUGIN_NAME not in metadata:
            return None
        return cls(
            plugin_name=metadata[PLUGIN_NAME],
            version=metadata.get(PLUGIN_VERSION),
            parameters={
                key.removeprefix(PLUGIN_PARAM_PREFIX): value
                for key, value in metadata.items()
                if key.startswith(PLUGIN_PARAM_PREFIX)
            },
        )


class ArtifactResult(BaseModel):
    """What was fetched or published, stored as metadata.json in the cache"""

    id: str
    reference: str = ""
    digest: str = ""
    size: int = 0
    local_path: str | None = None
    metadata: dict[str, str] = {}
    plugin_info: PluginExecutionInfo | None = None
    cached: bool = False
    cached_at: datetime | None = None
    exported_files: list[str] = []

    def dump(self) -> str:
        return self.model_dump_json(indent=2, exclude_none=True)
