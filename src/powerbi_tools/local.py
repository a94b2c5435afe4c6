"""
Local Power BI Desktop tool
Detects Desktop instances and queries their embedded Analysis Services engine
"""
import asyncio
import functools
import logging
from typing import Any, Dict, Optional

from powerbi_errors import UpstreamFailure
from powerbi_tools.registry import OperationHandler, ToolContext

logger = logging.getLogger(__name__)


class LocalPbiOperationsHandler(OperationHandler):
    """No authentication: the local engine only listens on localhost"""

    operations = ('detect', 'get_schema', 'execute_dax', 'list_tables')

    input_schema = {
        "type": "object",
        "properties": {
            "operation": {
                "type": "string",
                "enum": list(operations),
                "description": "detect: find running Desktop instances; get_schema / list_tables / execute_dax: work with one local model"
            },
            "database": {"type": "string", "description": "Local model (database) name; defaults to the first one found"},
            "query": {"type": "string", "description": "DAX query (required for execute_dax)"},
            "port": {"type": "number", "description": "Local Analysis Services port (detected automatically when omitted)"}
        },
        "required": ["operation"]
    }

    async def _call(self, func, *args):
        return await asyncio.get_event_loop().run_in_executor(None, functools.partial(func, *args))

    async def _resolve_port(self, args: Dict[str, Any], context: ToolContext) -> int:
        if args.get('port'):
            return int(args['port'])
        instances = await self._call(context.desktop.discover_instances)
        if not instances:
            raise UpstreamFailure("Power BI Desktop is not running. Open a .pbix file first.")
        return instances[0]['port']

    async def _resolve_database(self, args: Dict[str, Any], context: ToolContext, port: int) -> str:
        if args.get('database'):
            return args['database']
        databases = await self._call(context.desktop.list_databases, port)
        if not databases:
            raise UpstreamFailure(f"No model found on port {port}. Specify the database argument.")
        return databases[0]

    async def op_detect(self, args, context):
        instances = await self._call(context.desktop.discover_instances)
        if not instances:
            return {
                'found': False,
                'message': 'No Power BI Desktop instance found. Open a .pbix file and try again.',
                'hint': 'Power BI Desktop must be open with a report loaded.',
            }

        async def describe(instance: Dict[str, Any]) -> Dict[str, Any]:
            databases = []
            error: Optional[str] = None
            try:
                databases = await self._call(context.desktop.list_databases, instance['port'])
            except UpstreamFailure as e:
                error = e.message
            result = {
                'port': instance['port'],
                'connectionString': f"localhost:{instance['port']}",
                'databases': databases,
                'databaseCount': len(databases),
            }
            if error:
                result['error'] = error
            return result

        results = await asyncio.gather(*(describe(instance) for instance in instances))
        return {
            'found': True,
            'instanceCount': len(results),
            'instances': list(results),
            'message': f"Found {len(results)} Power BI Desktop instance(s).",
            'usage': 'Use get_schema or execute_dax with the database argument to work with one model.',
        }

    async def op_list_tables(self, args, context):
        port = await self._resolve_port(args, context)
        if args.get('database'):
            database = args['database']
        else:
            databases = await self._call(context.desktop.list_databases, port)
            if not databases:
                raise UpstreamFailure(f"No model found on port {port}")
            if len(databases) > 1:
                return {'port': port, 'databases': databases, 'message': 'Several models are open; specify the database argument'}
            database = databases[0]
        tables = await self._call(context.desktop.list_tables, port, database)
        return {'database': database, 'port': port, 'tables': tables}

    async def op_get_schema(self, args, context):
        port = await self._resolve_port(args, context)
        database = await self._resolve_database(args, context, port)
        schema = await self._call(context.desktop.get_schema, port, database)
        return {'database': database, 'port': port, 'connectionString': f"localhost:{port}", 'schema': schema}

    async def op_execute_dax(self, args, context):
        self.require(args, 'query', operation='execute_dax')
        port = await self._resolve_port(args, context)
        database = await self._resolve_database(args, context, port)
        rows = await self._call(context.desktop.execute_dax, port, database, args['query'])
        result = {'database': database, 'port': port, 'rows': rows, 'rowCount': len(rows)}
        if not rows:
            result['message'] = 'Query ran and returned no rows'
        return result
