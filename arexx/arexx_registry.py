"""
Script registry and trigger dispatch.

Scripts come from a ScriptRepository handed to the ScriptEngine; there is no
module-level registry. A YAML manifest looks like:

    scripts:
      - id: welcome
        name: Welcome banner
        trigger: login
        enabled: true
        source: |
          SAY "Welcome " || USERNAME
      - id: stats
        name: Stats
        trigger: command
        file: stats.rexx        # relative to the manifest

A bare top-level list of entries is accepted too.
"""
from __future__ import annotations

import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import yaml

from arexx.arexx_runtime import EngineConfig, ExecutionResult, Interpreter


class ScriptNotFound(LookupError):
    pass


class ManifestError(ValueError):
    """A malformed script manifest."""
    pass


@dataclass
class ScriptRecord:
    id: str
    name: str
    source: str
    trigger: Optional[str] = None
    enabled: bool = True


class ScriptRepository(ABC):
    """Where a ScriptEngine gets its scripts from."""

    @abstractmethod
    async def load_scripts(self) -> List[ScriptRecord]:
        raise NotImplementedError

    async def record_execution(self, script: ScriptRecord, result: ExecutionResult, args: List[str]):
        """Called after every run; repositories that keep an audit log override this."""
        return None


class InMemoryScriptRepository(ScriptRepository):
    def __init__(self, scripts: Optional[List[ScriptRecord]] = None):
        self.scripts = list(scripts or [])
        self.executions: List[Dict[str, Any]] = []

    async def load_scripts(self) -> List[ScriptRecord]:
        return list(self.scripts)

    async def record_execution(self, script, result, args):
        self.executions.append({
            "script_id": script.id,
            "success": result.success,
            "args": list(args),
            "variables": dict(result.variables),
            "time": time.time(),
        })


def _entry_to_record(entry: Any, base_dir: str) -> ScriptRecord:
    if not isinstance(entry, dict):
        raise ManifestError(f"script entry must be a mapping, got {type(entry).__name__}")
    if "id" not in entry:
        raise ManifestError(f"script entry without an id: {entry!r}")
    sid = str(entry["id"])
    if "source" in entry:
        source = str(entry["source"])
    elif "file" in entry:
        path = os.path.join(base_dir, str(entry["file"]))
        with open(path, "r", encoding="utf-8") as f:
            source = f.read()
    else:
        raise ManifestError(f"script {sid!r} needs either 'source' or 'file'")
    trigger = entry.get("trigger")
    return ScriptRecord(
        id=sid,
        name=str(entry.get("name") or sid),
        source=source,
        trigger=str(trigger) if trigger is not None else None,
        enabled=bool(entry.get("enabled", True)),
    )


def parse_manifest(text: str, base_dir: str = ".") -> List[ScriptRecord]:
    data = yaml.safe_load(text)
    if data is None:
        return []
    if isinstance(data, dict):
        data = data.get("scripts") or []
    if not isinstance(data, list):
        raise ManifestError("manifest must be a list of scripts or a mapping with a 'scripts' list")
    return [_entry_to_record(entry, base_dir) for entry in data]


class YamlScriptRepository(ScriptRepository):
    """Reads script records from a YAML manifest on every load."""

    def __init__(self, path: str):
        self.path = path

    async def load_scripts(self) -> List[ScriptRecord]:
        with open(self.path, "r", encoding="utf-8") as f:
            text = f.read()
        return parse_manifest(text, os.path.dirname(os.path.abspath(self.path)))


class ScriptEngine:
    """Keeps the loaded scripts and runs them for triggers and direct calls."""

    def __init__(self, repository: ScriptRepository, config: Optional[EngineConfig] = None):
        self.repository = repository
        self.config = config or EngineConfig.from_env()
        self.scripts: Dict[str, ScriptRecord] = {}

    async def load(self) -> int:
        for script in await self.repository.load_scripts():
            self.scripts[script.id] = script
        return len(self.scripts)

    async def reload(self) -> int:
        self.scripts.clear()
        return await self.load()

    def add_script(self, script: ScriptRecord):
        """Adds a script, replacing one with the same id."""
        self.scripts[script.id] = script

    def remove_script(self, script_id: str):
        self.scripts.pop(script_id, None)

    def get_scripts(self) -> List[ScriptRecord]:
        return list(self.scripts.values())

    def get_scripts_by_trigger(self, event: str) -> List[ScriptRecord]:
        return [s for s in self.scripts.values() if s.trigger == event]

    async def execute_script(self, script: ScriptRecord, host: Any = None, args=()) -> ExecutionResult:
        args = [str(a) for a in args]
        result = await Interpreter(host, args, self.config).execute(script.source)
        await self.repository.record_execution(script, result, args)
        return result

    async def execute_trigger(self, event: str, host: Any = None, args=()) -> List[ExecutionResult]:
        """Runs every enabled script bound to `event`, in load order."""
        results = []
        for script in self.get_scripts_by_trigger(event):
            if not script.enabled:
                continue
            results.append(await self.execute_script(script, host, args))
        return results

    async def execute_by_name(self, name: str, host: Any = None, args=()) -> ExecutionResult:
        for script in self.scripts.values():
            if script.name == name:
                return await self.execute_script(script, host, args)
        raise ScriptNotFound(f"AREXX script '{name}' not found")

    async def execute_by_id(self, script_id: str, host: Any = None, args=()) -> ExecutionResult:
        script = self.scripts.get(script_id)
        if script is None:
            raise ScriptNotFound(f"AREXX script with ID '{script_id}' not found")
        return await self.execute_script(script, host, args)
