"""
Repair the source map of one optimized asset.

For every artifact: take the minifier's own map or synthesize one from a text
diff, compose it with the map an earlier build step left next to the file,
make the sources relative to the artifact and serialize the result.
"""

import logging
import os
import re
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple, Union

from plugins.optimize.composer import MappingComposer
from plugins.optimize.diff_mapper import TextDiffMapper
from plugins.optimize.errors import IOFailure, ParseError, SourceMapError
from plugins.optimize.mapping import Mapping
from plugins.optimize.paths import PathNormalizer, relative_reference

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

# Asset kinds that can carry a sourceMappingURL comment.
EXTENSION_KINDS: Dict[str, str] = {
    ".js": "js",
    ".mjs": "js",
    ".cjs": "js",
    ".jsx": "js",
    ".css": "css",
}

# A trailing `//# sourceMappingURL=...` or `/*# sourceMappingURL=... */` comment.
SOURCE_MAPPING_URL_RE = re.compile(
    r"(?:\n)?(?://[#@]\s*sourceMappingURL=[^\s]*|/\*[#@]\s*sourceMappingURL=[^\s*]*\s*\*/)\s*$"
)


def kind_of(file_path: str) -> Optional[str]:
    return EXTENSION_KINDS.get(os.path.splitext(file_path)[1].lower())


def source_mapping_url_comment(kind: str, reference: str) -> str:
    if kind == "css":
        return f"/*# sourceMappingURL={reference} */"
    return f"//# sourceMappingURL={reference}"


def add_source_mapping_url(content: str, file_path: str, kind: str) -> str:
    """Make `content` end with a comment pointing at `file_path + ".map"`.

    A different trailing sourceMappingURL comment is replaced.
    """
    comment = source_mapping_url_comment(kind, relative_reference(file_path + ".map", file_path))
    if comment in content:
        return content
    content = SOURCE_MAPPING_URL_RE.sub("", content)
    if content and not content.endswith("\n"):
        content += "\n"
    return content + comment + "\n"


class BuildCache:
    """State shared by the artifacts of a single build run.

    Create one per run and pass it to each `remap` call; never share it
    between runs.
    """

    def __init__(self):
        self._names: Dict[str, str] = {}

    def intern(self, name: str) -> str:
        # setdefault is atomic, so worker threads of one run can share the cache.
        return self._names.setdefault(name, name)

    def __len__(self) -> int:
        return len(self._names)


@dataclass(frozen=True)
class Artifact:
    """One transformed file entering the pipeline."""

    file_path: str
    before_content: str
    after_content: str
    transformation_mapping: Optional[Union[Mapping, str]] = None

    @property
    def kind(self) -> Optional[str]:
        return kind_of(self.file_path)


@dataclass(frozen=True)
class RemapResult:
    """The final mapping of an artifact and what degraded while building it.

    Check `degraded` before trusting the mapping to be fully resolved.
    """

    file_path: str
    content: str
    mapping: Mapping
    serialized: str
    diagnostics: Tuple[str, ...] = ()

    @property
    def degraded(self) -> bool:
        return bool(self.diagnostics)

    @property
    def map_path(self) -> str:
        return self.file_path + ".map"


@dataclass(frozen=True)
class ArtifactFailure:
    """An artifact that could not be processed; other artifacts are unaffected."""

    file_path: str
    error: Exception


class ArtifactRemapPipeline:
    """Runs ObtainTransformMapping, LoadUpstream, Compose, Normalize and Serialize for an artifact."""

    def __init__(
        self,
        build_root: Optional[str] = None,
        base_url: str = "",
        diff_mapper: Optional[TextDiffMapper] = None,
    ):
        self.normalizer = PathNormalizer(build_root, base_url)
        self.diff_mapper = diff_mapper or TextDiffMapper()

    def remap(
        self,
        file_path: str,
        before_content: str,
        after_content: str,
        transformer_mapping: Optional[Union[Mapping, str]] = None,
        cache: Optional[BuildCache] = None,
    ) -> RemapResult:
        diagnostics: List[str] = []
        file_name = os.path.basename(file_path)

        transform = self._transform_mapping(file_path, before_content, after_content, transformer_mapping, diagnostics)
        upstream = self._load_upstream(file_path, diagnostics)

        mapping = transform
        if upstream is not None:
            composer = MappingComposer(intern=cache.intern if cache is not None else None)
            composition = composer.compose([transform, upstream], label=file_path)
            diagnostics.extend(composition.diagnostics)
            mapping = composition.mapping

        mapping = replace(
            mapping,
            sources=tuple(self.normalizer.normalize(mapping.sources, file_path)),
            file=file_name,
        )

        return RemapResult(
            file_path=file_path,
            content=after_content,
            mapping=mapping,
            serialized=mapping.to_json(),
            diagnostics=tuple(diagnostics),
        )

    def process(self, artifact: Artifact, cache: Optional[BuildCache] = None) -> RemapResult:
        """Add the sourceMappingURL comment to the output, then remap it."""
        kind = artifact.kind
        if kind is None:
            raise ValueError(f"{artifact.file_path} cannot carry a source map")
        content = add_source_mapping_url(artifact.after_content, artifact.file_path, kind)
        if content != artifact.after_content:
            logger.debug("[optimize] added sourceMappingURL to %s", artifact.file_path)
        return self.remap(
            artifact.file_path,
            artifact.before_content,
            content,
            artifact.transformation_mapping,
            cache,
        )

    def write(self, result: RemapResult) -> None:
        for path, data in ((result.file_path, result.content), (result.map_path, result.serialized)):
            try:
                with open(path, mode="w", encoding="utf8") as f:
                    f.write(data)
            except OSError as e:
                raise IOFailure(f"cannot write {path}: {e}", result.file_path, e) from e

    def remap_all(
        self,
        artifacts: Sequence[Artifact],
        workers: int = 4,
        cache: Optional[BuildCache] = None,
        write: bool = False,
    ) -> List[Union[RemapResult, ArtifactFailure]]:
        """Process artifacts in parallel; results keep the input order."""
        cache = cache if cache is not None else BuildCache()

        def run(artifact: Artifact) -> Union[RemapResult, ArtifactFailure]:
            try:
                result = self.process(artifact, cache)
                if write:
                    self.write(result)
                return result
            except SourceMapError as e:
                logger.error("[optimize] source map failed for %s: %s", artifact.file_path, e.message)
                return ArtifactFailure(artifact.file_path, e)
            except Exception as e:
                logger.exception("[optimize] unexpected error for %s", artifact.file_path)
                return ArtifactFailure(artifact.file_path, e)

        with ThreadPoolExecutor(max_workers=max(1, workers)) as executor:
            return list(executor.map(run, artifacts))

    # -------------------------------
    # Steps
    # -------------------------------

    def _transform_mapping(
        self,
        file_path: str,
        before_content: str,
        after_content: str,
        transformer_mapping: Optional[Union[Mapping, str]],
        diagnostics: List[str],
    ) -> Mapping:
        if isinstance(transformer_mapping, Mapping):
            return transformer_mapping
        if transformer_mapping:
            try:
                return Mapping.from_json(transformer_mapping, file_path)
            except ParseError as e:
                message = f"ignored malformed transformer map: {e.message}"
                logger.info("[optimize] %s: %s", file_path, message)
                diagnostics.append(message)

        return self.diff_mapper.synthesize(
            before_content,
            after_content,
            source_name=os.path.basename(file_path),
            file_path=file_path,
        )

    def _load_upstream(self, file_path: str, diagnostics: List[str]) -> Optional[Mapping]:
        map_path = file_path + ".map"
        if not os.path.exists(map_path):
            return None

        try:
            with open(map_path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise IOFailure(f"cannot read {map_path}: {e}", file_path, e) from e

        try:
            upstream = Mapping.from_json(data, map_path)
        except ParseError as e:
            message = f"ignored malformed upstream map: {e}"
            logger.info("[optimize] %s: %s", file_path, message)
            diagnostics.append(message)
            return None

        if not upstream.sources:
            upstream = upstream.with_sources(self.normalizer.normalize((), file_path))
        logger.debug("[optimize] loaded upstream map %s (%d segments)", map_path, len(upstream.segments))
        return upstream
