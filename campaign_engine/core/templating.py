"""Message content rendering with a sandboxed Jinja2 environment."""

from typing import Any, Dict, Optional

from jinja2 import TemplateError, TemplateSyntaxError, UndefinedError
from jinja2.sandbox import SandboxedEnvironment

from ..models.core import ContactContext, MessageNode, RenderedContent
from .exceptions import TemplateRenderError
from .logging import get_logger

logger = get_logger(__name__)


class MessageRenderer:
    """
    Renders message node content for delivery.

    Templates see ``contact`` (the contact snapshot), ``name``, ``phone``,
    ``fields`` (custom fields), ``context`` (the enrollment context) and every
    node variable by name. Missing names render as empty strings; authoring
    mistakes surface as syntax errors when the workflow is activated.
    """

    def __init__(self):
        self._env = SandboxedEnvironment(
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(self, node: MessageNode, contact: Optional[ContactContext],
               context: Optional[Dict[str, Any]] = None) -> RenderedContent:
        """
        Render a message node for one contact.

        Raises:
            TemplateRenderError: If a template cannot be compiled or evaluated
        """
        config = node.config
        variables = self._base_variables(contact, context or {})

        if config.use_contact_name and not variables.get("name"):
            variables["name"] = config.fallback_name or ""

        rendered_vars: Dict[str, str] = {}
        for var_name, template_text in config.variables.items():
            rendered_vars[var_name] = self._render_string(template_text, variables, node.id)
        variables.update(rendered_vars)

        text = None
        if config.custom_message:
            text = self._render_string(config.custom_message, variables, node.id)

        logger.debug(f"Rendered message node '{node.id}'")
        return RenderedContent(
            text=text,
            template_id=config.template_id,
            variables=rendered_vars,
            media_url=config.media_url,
            media_type=config.media_type,
        )

    def check_syntax(self, node: MessageNode):
        """Compile every template of a message node without rendering it."""
        sources = [node.config.custom_message] + list(node.config.variables.values())
        for source in sources:
            if not source:
                continue
            try:
                self._env.parse(source)
            except TemplateSyntaxError as e:
                raise TemplateRenderError(f"Invalid template syntax: {e}", node_id=node.id)

    def _render_string(self, source: str, variables: Dict[str, Any], node_id: str) -> str:
        try:
            return self._env.from_string(source).render(**variables).strip()
        except TemplateSyntaxError as e:
            raise TemplateRenderError(f"Invalid template syntax: {e}", node_id=node_id)
        except UndefinedError as e:
            raise TemplateRenderError(f"Missing variable: {e}", node_id=node_id)
        except TemplateError as e:
            raise TemplateRenderError(f"Error rendering template: {e}", node_id=node_id)
        except Exception as e:
            # Runtime errors inside expressions, e.g. arithmetic on a string field
            raise TemplateRenderError(f"Error rendering template: {type(e).__name__}: {e}", node_id=node_id)

    @staticmethod
    def _base_variables(contact: Optional[ContactContext], context: Dict[str, Any]) -> Dict[str, Any]:
        contact_data = contact.model_dump() if contact else {}
        return {
            "contact": contact_data,
            "name": contact_data.get("name") or "",
            "phone": contact_data.get("phone") or "",
            "fields": contact_data.get("custom_fields") or {},
            "context": context,
        }
