"""
Power BI MCP Server
Exposes the Power BI tool registry over MCP stdio, gated by the persisted settings
"""
import asyncio
import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from mcp.server import Server, NotificationOptions
from mcp.server.models import InitializationOptions
from mcp.server.stdio import stdio_server
from mcp.types import (
    GetPromptResult,
    Prompt,
    PromptArgument,
    PromptMessage,
    TextContent,
    Tool,
)

from powerbi_auth import AuthManager
from powerbi_config import DEFAULT_POLL_INTERVAL, ConfigReconciler, ReconciledState, env_flag
from powerbi_desktop_connector import PowerBIDesktopConnector
from powerbi_errors import PowerBIMCPError, UpstreamFailure
from powerbi_rest_connector import PowerBIRestConnector
from powerbi_tools import Dispatcher, ToolContext, build_registry
from security import AuditLogger, PermissionGate

logger = logging.getLogger("powerbi-mcp")

SERVER_NAME = "powerbi-mcp"
SERVER_VERSION = "3.0.0"
CONFIRMATION_NOTE = " This tool changes the model: confirm with the user before running it."


# ==================== PROMPTS ====================

def _arg(name: str, description: str, required: bool = True) -> PromptArgument:
    return PromptArgument(name=name, description=description, required=required)


PROMPTS: List[Prompt] = [
    Prompt(
        name="QueryData",
        description="Query a semantic model using natural language",
        arguments=[
            _arg("semanticModelId", "Semantic model id"),
            _arg("question", "Question in natural language"),
        ],
    ),
    Prompt(
        name="AnalyzeModel",
        description="Analyze the structure and quality of a semantic model",
        arguments=[_arg("semanticModelId", "Semantic model id")],
    ),
    Prompt(
        name="OptimizeDAX",
        description="Optimize and document an existing DAX measure",
        arguments=[
            _arg("semanticModelId", "Semantic model id"),
            _arg("measureExpression", "DAX expression to optimize"),
            _arg("measureName", "Measure name", required=False),
        ],
    ),
    Prompt(
        name="BulkDocument",
        description="Write descriptions for the objects of a semantic model",
        arguments=[
            _arg("semanticModelId", "Semantic model id"),
            _arg("objectType", "Object type: tables, columns, measures", required=False),
        ],
    ),
    Prompt(
        name="CheckBestPractices",
        description="Check a semantic model against modeling best practices",
        arguments=[_arg("semanticModelId", "Semantic model id")],
    ),
    Prompt(
        name="CreateMeasure",
        description="Create a new DAX measure from a natural language description",
        arguments=[
            _arg("semanticModelId", "Semantic model id"),
            _arg("measureDescription", "What the measure should calculate"),
            _arg("tableName", "Table that will hold the measure", required=False),
        ],
    ),
]


def prompt_text(name: str, args: Dict[str, str]) -> str:
    """
    Render the user message for a built-in prompt

    Raises:
        ValueError: if the prompt does not exist
    """
    model_id = args.get("semanticModelId", "")

    if name == "QueryData":
        return (
            f"Use get_semantic_model_schema to get the schema of semantic model {model_id}.\n"
            f"Then use generate_query to write a DAX query answering:\n\"{args.get('question', '')}\"\n"
            f"Finally use execute_query to run it and show the formatted results."
        )

    if name == "AnalyzeModel":
        return (
            f"Use get_semantic_model_schema to get the full schema of semantic model {model_id}.\n"
            f"Then provide:\n"
            f"1. Overview of the structure (tables, columns, measures, relationships)\n"
            f"2. Problems found (tables without relationships, duplicated columns, measures without descriptions)\n"
            f"3. Suggested improvements\n"
            f"4. A quality score from 1 to 10"
        )

    if name == "OptimizeDAX":
        measure = f" ({args['measureName']})" if args.get("measureName") else ""
        return (
            f"Optimize and improve this DAX measure{measure}:\n\n"
            f"```dax\n{args.get('measureExpression', '')}\n```\n\n"
            f"Use dax_query_operations (validate_syntax) with semanticModelId {model_id} to validate it.\n"
            f"Provide:\n"
            f"1. The optimized version with an explanation of the changes\n"
            f"2. Expected performance impact\n"
            f"3. A description for the measure"
        )

    if name == "BulkDocument":
        objects = args.get("objectType") or "table, column and measure"
        return (
            f"Use get_semantic_model_schema to get the schema of semantic model {model_id}.\n"
            f"For every {objects} without a description, write a clear description.\n"
            f"Then use bulk_operations (bulk_document) to apply all descriptions at once."
        )

    if name == "CheckBestPractices":
        return (
            f"Use get_semantic_model_schema to analyze semantic model {model_id}.\n"
            f"Check these best practices and report on each:\n"
            f"- Clear and consistent naming\n"
            f"- Well separated dimension and fact tables\n"
            f"- Every measure has a description\n"
            f"- Unneeded columns are hidden\n"
            f"- Basic measures (totals, percentages, year over year) exist\n"
            f"- Hierarchies are defined\n"
            f"- Measure format strings are set\n\n"
            f"Score each item from 1 to 10."
        )

    if name == "CreateMeasure":
        table = f"Create the measure in table: {args['tableName']}\n" if args.get("tableName") else ""
        return (
            f"Use get_semantic_model_schema to get the schema of semantic model {model_id}.\n"
            f"Write a DAX measure that: \"{args.get('measureDescription', '')}\"\n"
            f"{table}\n"
            f"Provide:\n1. Suggested measure name\n2. DAX expression\n3. Format string\n4. Description\n"
            f"Use dax_query_operations (validate_syntax) to validate it before recommending it."
        )

    raise ValueError(f"Unknown prompt: {name}")


def error_payload(error: Exception) -> Dict[str, Any]:
    """JSON payload returned to the MCP client for a failed call"""
    if not isinstance(error, PowerBIMCPError):
        error = UpstreamFailure(f"{type(error).__name__}: {error}")
    return error.to_dict()


class PowerBIMCPServer:
    """Power BI MCP Server: tool registry, permission gate and live settings"""

    def __init__(self, config_path: Optional[str] = None, audit: Optional[AuditLogger] = None):
        self.server = Server(SERVER_NAME)

        self.registry = build_registry()
        self.gate = PermissionGate(self.registry)

        if audit is None and env_flag("ENABLE_AUDIT", True):
            audit = AuditLogger(log_dir=os.getenv("AUDIT_LOG_DIR") or None)
        self.audit = audit

        config_path = config_path if config_path is not None else os.getenv("POWERBI_MCP_CONFIG")
        self.reconciler = ConfigReconciler(
            config_path,
            self.registry,
            self.gate,
            poll_interval=float(os.getenv("POWERBI_CONFIG_POLL_SECONDS", DEFAULT_POLL_INTERVAL)),
            audit=self.audit,
        )
        state = self.reconciler.load_initial()

        # The auth manager starts from the applied settings and follows later reloads
        self.auth = AuthManager(state.config.auth)
        self.reconciler.auth = self.auth

        self.context = ToolContext(
            client=PowerBIRestConnector(self.auth),
            desktop=PowerBIDesktopConnector(),
            connection=state.config.connection,
        )
        self.reconciler.add_listener(self._on_config_applied)

        self.dispatcher = Dispatcher(self.registry, self.gate, self.context, audit=self.audit)

        self._setup_handlers()

    @property
    def require_confirmation(self) -> bool:
        state = self.reconciler.snapshot
        return state is None or state.config.require_confirmation

    def _on_config_applied(self, state: ReconciledState):
        self.context.connection = state.config.connection

    def list_tools(self) -> List[Tool]:
        """Tools enabled in the current permission snapshot"""
        tools = []
        confirm = self.require_confirmation
        for descriptor in self.registry.list_enabled(self.gate.snapshot()):
            tool = descriptor.to_mcp_tool()
            if confirm and descriptor.is_destructive:
                tool = tool.model_copy(update={"description": (tool.description or "") + CONFIRMATION_NOTE})
            tools.append(tool)
        return tools

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]]) -> str:
        """Dispatch a call and serialize the result or error as JSON text"""
        try:
            result = await self.dispatcher.dispatch(name, arguments or {})
            return json.dumps(result, indent=2, default=str)
        except Exception as e:
            if not isinstance(e, PowerBIMCPError):
                logger.error(f"Error executing {name}: {e}", exc_info=True)
            return json.dumps(error_payload(e), indent=2, default=str)

    def _setup_handlers(self):
        """Set up MCP handlers"""

        @self.server.list_tools()
        async def handle_list_tools() -> List[Tool]:
            return self.list_tools()

        @self.server.call_tool()
        async def handle_call_tool(name: str, arguments: Optional[Dict[str, Any]]) -> List[TextContent]:
            return [TextContent(type="text", text=await self.call_tool(name, arguments))]

        @self.server.list_prompts()
        async def handle_list_prompts() -> List[Prompt]:
            return PROMPTS

        @self.server.get_prompt()
        async def handle_get_prompt(name: str, arguments: Optional[Dict[str, str]]) -> GetPromptResult:
            text = prompt_text(name, arguments or {})
            return GetPromptResult(
                description=next(p.description for p in PROMPTS if p.name == name),
                messages=[PromptMessage(role="user", content=TextContent(type="text", text=text))],
            )

    async def run(self):
        """Run the MCP server"""
        self.reconciler.start()
        try:
            async with stdio_server() as (read_stream, write_stream):
                enabled = len(self.registry.list_enabled(self.gate.snapshot()))
                logger.info(f"Power BI MCP Server starting ({enabled}/{len(self.registry)} tools enabled)")
                await self.server.run(
                    read_stream,
                    write_stream,
                    InitializationOptions(
                        server_name=SERVER_NAME,
                        server_version=SERVER_VERSION,
                        capabilities=self.server.get_capabilities(
                            notification_options=NotificationOptions(),
                            experimental_capabilities={}
                        )
                    )
                )
        finally:
            await self.reconciler.stop()


def main():
    """Main entry point"""
    load_dotenv()
    logging.basicConfig(
        level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)]
    )
    server = PowerBIMCPServer()
    asyncio.run(server.run())


if __name__ == "__main__":
    main()
