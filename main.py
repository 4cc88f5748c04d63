import asyncio
from contextlib import asynccontextmanager
import logging
import logging.config
from pathlib import Path

from fastmcp import Context, FastMCP
from sqlmodel import SQLModel, create_engine
import uvicorn
import yaml

from api.routes import create_web_app
from audit import service as audit_service_module
from audit.service import AuditService
from llm import llm_from_env
from logic.rule_logic import RuleLogic
from models.api import (
    AutomationEvent,
    AutomationWorkflow,
    SceneLearningContext,
)
from proposals.engine import ProposalEngine
from rules.conditions import ConditionEvaluator
from rules.parser import WorkflowParser
from rules.scheduler import AutomationScheduler
from scenes.learning import SceneLearningEngine
from switchbot import SwitchBotClient
from timing.timers import TimerService
from util import env_var

BASE_DIR = Path(__file__).parent

with open(BASE_DIR / "log_config.yaml", encoding="utf-8") as f:
    logging.config.dictConfig(yaml.safe_load(f))

# Common Resources
switchbot = SwitchBotClient()
timer_service = TimerService()
evaluator = ConditionEvaluator(switchbot)
scheduler = AutomationScheduler(switchbot, evaluator, timer_service)
rule_logic = RuleLogic(scheduler)
parser = WorkflowParser(llm_from_env())
proposals = ProposalEngine(switchbot)
learning = SceneLearningEngine(switchbot)

web_app = create_web_app(rule_logic, parser, evaluator, proposals, learning, switchbot)

db_engine = create_engine(
    env_var("AUDIT_DB_URL", default=f"sqlite:///{BASE_DIR / 'audit.db'}")
)
SQLModel.metadata.create_all(db_engine)


@asynccontextmanager
async def lifespan(_: FastMCP):
    lc_logger = logging.getLogger("lifecycle")
    lc_logger.debug("SwitchBot automation server starting up...")

    audit_service_module.audit_service = AuditService(db_engine)
    audit_service_module.audit_service.start()
    lc_logger.debug("Audit service started")

    host = env_var("GATEWAY_HOST", default="0.0.0.0")
    port = int(env_var("GATEWAY_PORT", default="8080"))
    server = uvicorn.Server(uvicorn.Config(web_app, host=host, port=port))
    web_app_task = asyncio.create_task(server.serve())
    lc_logger.info("Web API listening on %s:%d", host, port)

    yield

    lc_logger.debug("SwitchBot automation server shutting down...")
    try:
        server.should_exit = True
        await web_app_task

        scheduler.stop_all_schedules()
        await timer_service.stop()
        lc_logger.debug("Rule schedules stopped")

        if audit_service_module.audit_service:
            await audit_service_module.audit_service.stop()
            audit_service_module.audit_service = None
            lc_logger.debug("Audit service stopped")
    except Exception as e:
        lc_logger.warning(f"Error during shutdown: {e}", exc_info=True)


mcp = FastMCP(name="SwitchBot Automation", lifespan=lifespan)


@mcp.tool()
async def parse_workflow(natural_language: str, ctx: Context) -> dict:
    """Turn a natural-language instruction into an automation rule (not yet saved).

    Args:
        natural_language: e.g. "夜8時になったら照明を暗くしてください"

    Returns:
        The parsed workflow with its confidence and improvement hints
    """
    try:
        workflow = await parser.parse_workflow(natural_language, "mcp")
        return {"success": True, "workflow": workflow.to_wire()}
    except ValueError as e:
        await ctx.error(f"Parsing failed: {e}")
        return {"success": False, "message": str(e)}


@mcp.tool()
async def save_workflow(workflow: dict, ctx: Context) -> dict:
    """Save a workflow returned by parse_workflow and start scheduling its rule."""
    try:
        rule = await rule_logic.save_workflow(AutomationWorkflow.model_validate(workflow))
        await ctx.info(f"Saved rule '{rule.name}' as {rule.id}")
        return {"success": True, "rule": rule.to_wire()}
    except ValueError as e:
        await ctx.error(f"Saving workflow failed: {e}")
        return {"success": False, "message": str(e)}


@mcp.tool()
async def get_rules() -> list[dict]:
    """List every registered automation rule."""
    return [rule.to_wire() for rule in rule_logic.get_rules()]


@mcp.tool()
async def execute_rule(rule_id: str, ctx: Context) -> dict:
    """Run a rule immediately, ignoring its schedule and conditions."""
    try:
        execution = await rule_logic.execute_rule(rule_id)
        return {"success": True, "execution": execution.to_wire()}
    except ValueError as e:
        await ctx.warning(str(e))
        return {"success": False, "message": str(e)}


@mcp.tool()
async def toggle_rule(rule_id: str, enabled: bool, ctx: Context) -> dict:
    """Enable or disable a rule's schedule."""
    try:
        rule = await rule_logic.toggle_rule(rule_id, enabled)
        return {"success": True, "rule": rule.to_wire()}
    except ValueError as e:
        await ctx.warning(str(e))
        return {"success": False, "message": str(e)}


@mcp.tool()
async def get_scene_candidates() -> list[dict]:
    """Scene candidates mined from recorded operations, best first."""
    return [c.to_wire() for c in learning.generate_scene_candidates()]


@mcp.tool()
async def get_scene_suggestions(
    time: str,
    recent_events: list[str] | None = None,
    available_devices: list[str] | None = None,
) -> list[dict]:
    """Suggest learned scenes for the current situation.

    Args:
        time: Current time as HH:MM
        recent_events: e.g. ["door_unlock"]
        available_devices: Device ids that can be controlled right now
    """
    context = SceneLearningContext(
        time=time,
        recent_events=recent_events or [],
        available_devices=available_devices or [],
    )
    return [s.to_wire() for s in learning.get_scene_suggestions(context)]


@mcp.tool()
async def analyze_event(event: dict, ctx: Context) -> dict:
    """Match a device event against the built-in automation heuristics."""
    try:
        proposal = await proposals.analyze_event(AutomationEvent.model_validate(event))
        return {"success": True, "proposal": proposal.to_wire()}
    except ValueError as e:
        await ctx.error(f"Invalid event: {e}")
        return {"success": False, "message": str(e)}


if __name__ == "__main__":
    mcp.run()
