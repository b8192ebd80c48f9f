"""
Manifest template rendering using Jinja2.

Backend manifests (docker-compose.yml, kubernetes all.yml) shipped in a
repository's .instantiate directory reference variables such as
{{ MR_ID }}, {{ HOST_DNS }} or {{ WEB_PORT }}. The lifecycle manager builds the
context and the renderer writes the materialized manifest.
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from jinja2 import Environment, TemplateError, Undefined, meta

logger = logging.getLogger(__name__)


class ManifestValidationError(Exception):
    """Rendered manifest is missing, empty or not valid YAML."""


class TemplateRenderer:
    """Renders manifest templates with a fixed variable context."""

    def __init__(self, variables: Dict[str, Any]):
        self.variables = dict(variables)
        self.jinja_env = Environment(
            undefined=Undefined,  # Unknown variables render empty
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            autoescape=False,
        )
        logger.debug(f"Created template renderer with {len(self.variables)} variables")

    def render_string(self, template_content: str) -> str:
        template = self.jinja_env.from_string(template_content)
        return template.render(**self.variables)

    def render_file(self, file_path: Union[str, Path], output_path: Optional[Union[str, Path]] = None) -> str:
        """
        Render a template file and optionally write the result.

        Args:
            file_path: Path to the manifest template
            output_path: Where to write the rendered manifest

        Returns:
            Rendered manifest content
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise ValueError(f"Template file not found: {file_path}")

        logger.info(f"Rendering manifest template: {file_path}")

        try:
            template_content = file_path.read_text(encoding="utf-8")
        except OSError as e:
            raise ValueError(f"Failed to read template file {file_path}: {e}") from e

        missing = self.list_missing_variables(template_content)
        if missing:
            logger.warning(f"Template {file_path.name} references undefined variables: {', '.join(missing)}")

        try:
            rendered = self.render_string(template_content)
        except TemplateError as e:
            raise ValueError(f"Failed to render template {file_path}: {e}") from e

        if output_path:
            output_path = Path(output_path)
            output_path.parent.mkdir(parents=True, exist_ok=True)
            try:
                output_path.write_text(rendered, encoding="utf-8")
            except OSError as e:
                raise ValueError(f"Failed to write rendered manifest {output_path}: {e}") from e
            logger.info(f"Rendered manifest written to: {output_path}")

        return rendered

    def list_missing_variables(self, template_content: str) -> List[str]:
        """Names referenced by the template that are absent from the context."""
        try:
            parsed = self.jinja_env.parse(template_content)
        except TemplateError:
            return []
        referenced = meta.find_undeclared_variables(parsed)
        return sorted(name for name in referenced if name not in self.variables)


def validate_manifest(manifest_path: Union[str, Path]) -> List[Any]:
    """
    Check that a manifest is well-formed YAML with at least one document.

    Returns:
        The parsed documents

    Raises:
        ManifestValidationError: If the file is missing, unparsable or empty
    """
    manifest_path = Path(manifest_path)
    if not manifest_path.is_file():
        raise ManifestValidationError(f"Manifest not found: {manifest_path}")

    try:
        with open(manifest_path, "r", encoding="utf-8") as f:
            documents = [doc for doc in yaml.safe_load_all(f) if doc is not None]
    except yaml.YAMLError as e:
        raise ManifestValidationError(f"Invalid YAML in {manifest_path}: {e}") from e

    if not documents:
        raise ManifestValidationError(f"Manifest is empty: {manifest_path}")

    logger.debug(f"Manifest {manifest_path} is valid ({len(documents)} document(s))")
    return documents
