"""
An MkDocs plugin that optimizes the built site: minifies HTML, JS and CSS,
adds module preload hints for module scripts and keeps JS/CSS source maps
pointing at the original authored sources.
"""

import html as html_lib
import logging
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple, Union

import csscompressor
import htmlmin
import jsmin
from bs4 import BeautifulSoup
from mkdocs.config import config_options as c
from mkdocs.config.defaults import MkDocsConfig
from mkdocs.plugins import BasePlugin
from mkdocs.structure.pages import Page
from packaging import version

from plugins.optimize.errors import DiffFailure, IOFailure
from plugins.optimize.pipeline import Artifact, ArtifactFailure, ArtifactRemapPipeline, BuildCache, RemapResult

# Use MkDocs' recommended plugin logger namespace so debug logs appear only with `--verbose`.
logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

# Minifier dispatch table for JS/CSS. HTML is handled via `htmlmin2` package.
MINIFIERS: Dict[str, Callable] = {
    "js": jsmin.jsmin,
    "css": csscompressor.compress,
}

# Compatibility: csscompressor<=0.9.5. Preserve whitespace in url() to avoid breaking SVG data URIs.
if version.parse(csscompressor.__version__) <= version.parse("0.9.5"):
    # See https://github.com/sprymix/csscompressor/issues/9#issuecomment-1024417374
    _preserve_call_tokens_original = csscompressor._preserve_call_tokens
    _url_re = csscompressor._url_re

    def _preserve_call_tokens_keep_url_ws(*args, **kwargs):
        """Switch `remove_ws` off for the url() pattern so SVG data URIs survive."""
        if _url_re == args[1]:
            kwargs["remove_ws"] = False
        return _preserve_call_tokens_original(*args, **kwargs)

    csscompressor._preserve_call_tokens = _preserve_call_tokens_keep_url_ws


def add_module_preload_links(output: str) -> str:
    """Add `<link rel="modulepreload">` for every `<script type="module" src>` of a page.

    Hints already present are not duplicated. Links go right before `</head>`,
    or at the top of the document when there is no head.
    """
    if not output or "module" not in output:
        return output

    soup = BeautifulSoup(output, "html.parser")
    existing = {link.get("href") for link in soup.select('link[rel~="modulepreload"][href]')}

    links: List[str] = []
    seen = set(existing)
    for script in soup.select('script[type="module"][src]'):
        src = script.get("src")
        if not src or src in seen:
            continue
        seen.add(src)
        crossorigin = script.get("crossorigin")
        attrs = f' href="{html_lib.escape(src, quote=True)}"'
        if crossorigin is not None:
            attrs += f' crossorigin="{html_lib.escape(crossorigin, quote=True)}"' if crossorigin else " crossorigin"
        links.append(f'<link rel="modulepreload"{attrs}>')

    if not links:
        return output

    insert_pos = output.lower().rfind("</head>")
    if insert_pos != -1:
        return output[:insert_pos] + "".join(links) + output[insert_pos:]
    return "".join(links) + output


class OptimizePlugin(BasePlugin):
    """MkDocs plugin that minifies the built site and repairs its source maps.

    Configuration options (all optional):
    - minify_html (bool): Minify rendered HTML pages and templates.
    - minify_js (bool): Minify JS assets matched by `js_files`.
    - minify_css (bool): Minify CSS assets matched by `css_files`.
    - js_files (str|list): Paths or glob patterns (relative to site_dir) of JS assets.
    - css_files (str|list): Paths or glob patterns (relative to site_dir) of CSS assets.
    - htmlmin_opts (dict): Extra options forwarded to `htmlmin.minify` (safely merged).
    - source_maps (bool): Write `<asset>.map` next to each minified asset, composed with any
      map an earlier build step left there.
    - module_preload (bool): Add modulepreload hints for module scripts.
    - base_url (str): URL prefix under which site_dir is served in existing maps' sources.
    - workers (int): Number of assets processed concurrently.
    """

    config_scheme = (
        ('minify_html',    c.Type(bool, default=True)),
        ('minify_js',      c.Type(bool, default=True)),
        ('minify_css',     c.Type(bool, default=True)),
        ('js_files',       c.Type((str, list), default=["**/*.js"])),
        ('css_files',      c.Type((str, list), default=["**/*.css"])),
        ('htmlmin_opts',   c.Type(dict, default={})),
        ('source_maps',    c.Type(bool, default=True)),
        ('module_preload', c.Type(bool, default=True)),
        ('base_url',       c.Type(str, default="")),
        ('workers',        c.Type(int, default=4)),
        ('debug',          c.Type(bool, default=False)),
    )

    def __init__(self):
        super().__init__()
        # One cache per build run; replaced in on_pre_build.
        self._cache: Optional[BuildCache] = None
        self.failures: List[ArtifactFailure] = []

    # -------------------------------
    # Helpers
    # -------------------------------

    def _debug_enabled(self) -> bool:
        return bool(self.config.get("debug", False))

    def _dbg(self, msg: str, *args) -> None:
        """Debug log gated by plugin config.

        MkDocs only shows DEBUG when run with `-v/--verbose`.
        """
        if not self._debug_enabled():
            return

        logger.debug("[optimize] " + msg, *args)

    @staticmethod
    def _minify_file_data_with_func(file_data: str, minify_func: Callable) -> str:
        """Run the correct minifier with safe parameters."""
        if minify_func.__name__ == "jsmin":
            return minify_func(file_data, quote_chars="'\"`")
        else:
            return minify_func(file_data)

    def _minify_html_page(self, output: str) -> Optional[str]:
        """Minify HTML using plugin config and merged options."""
        output_opts: Dict[str, Union[bool, str, Tuple[str, ...]]] = {
            "remove_comments": False,
            "remove_empty_space": False,
            "remove_all_empty_space": False,
            "reduce_empty_attributes": True,
            "reduce_boolean_attributes": False,
            "remove_optional_attribute_quotes": False,
            "convert_charrefs": True,
            "keep_pre": False,
            "pre_tags": ("pre", "textarea"),
            "pre_attr": "pre",
        }

        selected_opts: Dict = self.config.get("htmlmin_opts", {}) or {}
        for key in selected_opts:
            if key in output_opts:
                output_opts[key] = selected_opts[key]
            else:
                logger.warning("htmlmin option '%s' not recognized", key)

        return htmlmin.minify(output, **output_opts)

    def _optimize_html(self, output: str) -> str:
        if self.config.get("minify_html", True):
            output = self._minify_html_page(output) or output
        if self.config.get("module_preload", True):
            output = add_module_preload_links(output)
        return output

    def _expand_targets(self, file_type: str, site_dir: Path) -> List[Path]:
        """Resolve `<file_type>_files` entries (paths or globs) to existing files under site_dir."""
        patterns: Union[str, List[str]] = self.config.get(f"{file_type}_files") or []
        if not isinstance(patterns, list):
            patterns = [patterns]

        targets: List[Path] = []
        for pattern in patterns:
            pattern = pattern.lstrip("/")
            if any(ch in pattern for ch in "*?["):
                targets.extend(p for p in site_dir.glob(pattern) if p.is_file())
            elif (site_dir / pattern).is_file():
                targets.append(site_dir / pattern)
            else:
                self._dbg("[targets] %s not found under %s", pattern, site_dir.as_posix())

        # Remove duplicates; sort so runs are reproducible.
        return sorted(set(targets))

    # -------------------------------
    # Asset processing
    # -------------------------------

    def _read_artifacts(self, file_type: str, site_dir: Path) -> List[Artifact]:
        minify_func: Callable = MINIFIERS[file_type]
        artifacts: List[Artifact] = []

        for file_path in self._expand_targets(file_type, site_dir):
            site_file_path = file_path.as_posix()
            try:
                before = file_path.read_text(encoding="utf8")
            except UnicodeDecodeError as e:
                error = DiffFailure(f"not valid UTF-8 text ({e.reason})", site_file_path)
                logger.error("[optimize] %s", error)
                self.failures.append(ArtifactFailure(site_file_path, error))
                continue
            except OSError as e:
                error = IOFailure(f"cannot read asset: {e}", site_file_path, e)
                logger.error("[optimize] %s", error)
                self.failures.append(ArtifactFailure(site_file_path, error))
                continue

            self._dbg("[%s] minifying %s", file_type, site_file_path)
            after = self._minify_file_data_with_func(before, minify_func)
            artifacts.append(Artifact(site_file_path, before, after))

        return artifacts

    def _optimize_assets(self, file_type: str, config: MkDocsConfig) -> None:
        """Minify assets of one type ("js" or "css") in place and write their source maps."""
        site_dir = Path(config["site_dir"])
        artifacts = self._read_artifacts(file_type, site_dir)
        if not artifacts:
            self._dbg("[%s] nothing to optimize", file_type)
            return

        if not self.config.get("source_maps", True):
            for artifact in artifacts:
                Path(artifact.file_path).write_text(artifact.after_content, encoding="utf8")
            logger.info("[optimize] minified %d %s file(s)", len(artifacts), file_type)
            return

        pipeline = ArtifactRemapPipeline(build_root=str(site_dir), base_url=self.config.get("base_url", ""))
        results = pipeline.remap_all(
            artifacts,
            workers=self.config.get("workers", 4),
            cache=self._cache if self._cache is not None else BuildCache(),
            write=True,
        )

        remapped = [r for r in results if isinstance(r, RemapResult)]
        degraded = [r for r in remapped if r.degraded]
        failed = [r for r in results if isinstance(r, ArtifactFailure)]
        self.failures.extend(failed)
        for result in degraded:
            for diagnostic in result.diagnostics:
                self._dbg("[%s] degraded %s: %s", file_type, result.file_path, diagnostic)
        logger.info(
            "[optimize] %s: %d file(s) minified with source maps, %d degraded, %d failed",
            file_type, len(remapped), len(degraded), len(failed),
        )

    # -------------------------------
    # MkDocs hooks
    # -------------------------------

    def on_pre_build(self, *, config: MkDocsConfig) -> None:
        """Start a new build run with a fresh cache."""
        self._cache = BuildCache()
        self.failures = []

    def on_post_page(self, output: str, *, page: Page, config: MkDocsConfig) -> Optional[str]:
        """Minify rendered HTML and add module preload hints for Markdown pages."""
        self._dbg("[post_page] page=%s", getattr(page, "url", ""))
        return self._optimize_html(output)

    def on_post_template(self, output_content: str, *, template_name: str, config: MkDocsConfig) -> Optional[str]:
        """Same treatment for static HTML templates (404.html, ...)."""
        if not template_name.endswith(".html"):
            return output_content
        self._dbg("[post_template] template=%s", template_name)
        return self._optimize_html(output_content)

    def on_post_build(self, *, config: MkDocsConfig) -> None:
        """After build: minify JS/CSS in site_dir and write composed source maps."""
        if self.config.get("minify_js", True):
            self._optimize_assets("js", config)
        if self.config.get("minify_css", True):
            self._optimize_assets("css", config)
        if self.failures:
            logger.warning("[optimize] %d asset(s) could not be optimized", len(self.failures))
        self._cache = None
