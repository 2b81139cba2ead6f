"""
kubeplane/templates/manager.py

Named script templates rendered with jinja2.

`TemplateManager.init(dir)` loads the built-in defaults, then every file in
`dir` registered by filename stem (`kubeadm.sh.j2` -> `kubeadm`), so a custom
file replaces the default of the same name. The manager is read-only after
init; callers get it injected rather than reaching for a global.
"""

from __future__ import annotations

import logging
import os
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import aiofiles
import aiofiles.os
import jinja2
from pydantic import BaseModel

from kubeplane.errors import TemplateExecError, TemplateNotFound
from kubeplane.templates.defaults import DEFAULT_TEMPLATES

logger = logging.getLogger(__name__)


def template_stem(filename: str) -> str:
    """`kubeadm.sh.j2` -> `kubeadm`."""
    return os.path.basename(filename).split(".", 1)[0]


class TemplateManager:
    def __init__(self, sources: Mapping[str, str]) -> None:
        self._sources = MappingProxyType(dict(sources))
        self._env = jinja2.Environment(
            loader=jinja2.DictLoader(dict(self._sources)),
            undefined=jinja2.StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        self._compiled: Dict[str, jinja2.Template] = {}

    @classmethod
    async def init(cls, template_dir: Optional[str] = None) -> TemplateManager:
        """
        Build a manager from the defaults plus an optional override directory.

        Args:
            template_dir: Directory of template files; hidden files and
                subdirectories are ignored. A missing directory is an error.

        Returns:
            TemplateManager: the frozen manager.
        """
        sources: Dict[str, str] = dict(DEFAULT_TEMPLATES)
        if template_dir:
            for name in sorted(await aiofiles.os.listdir(template_dir)):
                path = os.path.join(template_dir, name)
                if name.startswith(".") or not await aiofiles.os.path.isfile(path):
                    continue
                async with aiofiles.open(path, "r", encoding="utf-8") as fh:
                    sources[template_stem(name)] = await fh.read()
                logger.info("Loaded template %s from %s", template_stem(name), path)
        manager = cls(sources)
        # a broken custom template fails here, not mid-task
        for name in manager.names():
            manager.get(name)
        return manager

    @classmethod
    def defaults(cls) -> TemplateManager:
        return cls(DEFAULT_TEMPLATES)

    def names(self) -> List[str]:
        return sorted(self._sources)

    def get(self, name: str) -> jinja2.Template:
        if name not in self._sources:
            raise TemplateNotFound(f"template {name!r} not found")
        if name not in self._compiled:
            try:
                self._compiled[name] = self._env.get_template(name)
            except jinja2.TemplateSyntaxError as exc:
                raise TemplateExecError(
                    f"template {name!r} line {exc.lineno}: {exc.message}"
                ) from exc
        return self._compiled[name]

    def render(self, name: str, cfg: BaseModel | Mapping[str, Any]) -> str:
        """
        Render template `name` against `cfg`.

        Raises:
            TemplateNotFound: Unknown name.
            TemplateExecError: Undefined variable or any other jinja2 failure.
        """
        template = self.get(name)
        context = cfg.model_dump(mode="json") if isinstance(cfg, BaseModel) else dict(cfg)
        try:
            return template.render(**context)
        except jinja2.TemplateError as exc:
            raise TemplateExecError(f"rendering {name!r} failed: {exc}") from exc
