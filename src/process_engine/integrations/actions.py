"""
Automated action registry
"""
import asyncio
import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional

from ..core.context import ContextManager
from ..exceptions import ActionExecutionError, DefinitionIntegrityError, EvaluationError


logger = logging.getLogger(__name__)


# handler(params, context) -> mapping merged into the instance context
ActionHandler = Callable[[Dict[str, Any], Dict[str, Any]], Any]


@dataclass
class ActionDefinition:
    """Registered action"""
    name: str
    handler: ActionHandler
    description: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)


class ActionRegistry:
    """Name -> handler table for automated-action nodes"""

    def __init__(self):
        self.actions: Dict[str, ActionDefinition] = {}

    def register(self, name: str, handler: ActionHandler, description: str = ""):
        if not callable(handler):
            raise ValueError(f"Handler for action {name} must be callable")
        self.actions[name] = ActionDefinition(name=name, handler=handler, description=description)
        logger.info(f"Registered action: {name}")

    def unregister(self, name: str):
        if self.actions.pop(name, None):
            logger.info(f"Unregistered action: {name}")

    def get(self, name: str) -> Optional[ActionDefinition]:
        return self.actions.get(name)

    def list(self) -> List[ActionDefinition]:
        return list(self.actions.values())

    async def invoke(
        self,
        name: str,
        params: Mapping[str, Any],
        context: Mapping[str, Any],
        node_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """Run an action; handlers see copies of params and context"""
        action = self.actions.get(name)
        if action is None:
            raise DefinitionIntegrityError(f"Unknown action '{name}'", node_id=node_id)

        args = (copy.deepcopy(dict(params or {})), copy.deepcopy(dict(context)))
        try:
            if asyncio.iscoroutinefunction(action.handler):
                result = await action.handler(*args)
            else:
                result = action.handler(*args)
        except EvaluationError:
            raise
        except Exception as e:
            logger.error(f"Action {name} raised: {e}", exc_info=True)
            raise ActionExecutionError(name, str(e), node_id=node_id, cause=e) from e

        if result is None:
            return {}
        if not isinstance(result, Mapping):
            raise ActionExecutionError(
                name, f"expected a mapping result, got {type(result).__name__}", node_id=node_id
            )
        return dict(result)


class BuiltinActions:
    """Actions available to every definition"""

    @staticmethod
    def register_all(registry: ActionRegistry, context_manager: ContextManager = None):
        context_manager = context_manager or ContextManager()

        def set_variable(params: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
            name = params.get("name")
            if not name:
                raise ValueError("set_variable requires 'name'")
            return {name: params.get("value")}

        def evaluate(params: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
            target = params.get("target")
            expression = params.get("expression")
            if not target or not expression:
                raise ValueError("evaluate requires 'target' and 'expression'")
            return {target: context_manager.resolve(expression, context)}

        def log(params: Dict[str, Any], context: Dict[str, Any]) -> Dict[str, Any]:
            level = params.get("level", "info")
            getattr(logger, level, logger.info)(f"Workflow action: {params.get('message', '')}")
            return {}

        registry.register("set_variable", set_variable, "Set one context variable")
        registry.register("evaluate", evaluate, "Store the value of an expression")
        registry.register("log", log, "Write a message to the application log")
