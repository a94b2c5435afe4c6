"""
Workspace, database, DAX, bulk and trace tools
"""
import asyncio
import logging
import re
import time
from typing import Any, Dict, List, Optional

from powerbi_errors import ToolArgumentError, UpstreamFailure
from powerbi_rest_connector import first_table_rows
from powerbi_tools.registry import OperationHandler, ToolContext

logger = logging.getLogger(__name__)

DEFAULT_RESULT_ROWS = 500
COMPATIBILITY_LEVEL = 1605


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


def _xmla_endpoint(args: Dict[str, Any], context: ToolContext) -> str:
    endpoint = args.get('xmlaEndpoint') or context.default_xmla_endpoint
    if not endpoint:
        raise ToolArgumentError("xmlaEndpoint is required (no default XMLA endpoint is configured)")
    return endpoint


# ==================== CONNECTION ====================

class ConnectionOperationsHandler(OperationHandler):
    operations = ('list_workspaces', 'list_datasets', 'get_dataset_info', 'test_connection')

    async def op_list_workspaces(self, args, context):
        workspaces = await context.client.list_workspaces()
        return {
            'operation': 'list_workspaces',
            'count': len(workspaces),
            'workspaces': [
                {'id': w.get('id'), 'name': w.get('name'), 'type': w.get('type'), 'isReadOnly': w.get('isReadOnly')}
                for w in workspaces
            ],
        }

    async def op_list_datasets(self, args, context):
        datasets = await context.client.list_datasets(args.get('workspaceId'))
        return {
            'operation': 'list_datasets',
            'workspaceId': args.get('workspaceId') or 'my_workspace',
            'count': len(datasets),
            'datasets': [
                {
                    'id': d.get('id'),
                    'name': d.get('name'),
                    'configuredBy': d.get('configuredBy'),
                    'isRefreshable': d.get('isRefreshable'),
                    'webUrl': d.get('webUrl'),
                }
                for d in datasets
            ],
        }

    async def op_get_dataset_info(self, args, context):
        self.require(args, 'datasetId', operation='get_dataset_info')
        dataset = await context.client.get_dataset(args['datasetId'], args.get('workspaceId'))
        return {'operation': 'get_dataset_info', 'dataset': dataset}

    async def op_test_connection(self, args, context):
        await context.client.list_datasets()
        return {
            'operation': 'test_connection',
            'status': 'connected',
            'message': 'Connection to the Power BI REST API succeeded',
        }


# ==================== DATABASE ====================

class DatabaseOperationsHandler(OperationHandler):
    operations = ('list', 'get', 'create', 'delete', 'refresh', 'get_refresh_history')

    async def op_list(self, args, context):
        datasets = await context.client.list_datasets(args.get('workspaceId'))
        return {
            'operation': 'list',
            'count': len(datasets),
            'databases': [
                {
                    'id': d.get('id'),
                    'name': d.get('name'),
                    'isRefreshable': d.get('isRefreshable'),
                    'configuredBy': d.get('configuredBy'),
                    'webUrl': d.get('webUrl'),
                }
                for d in datasets
            ],
        }

    async def op_get(self, args, context):
        self.require(args, 'semanticModelId', operation='get')
        dataset = await context.client.get_dataset(args['semanticModelId'], args.get('workspaceId'))
        return {'operation': 'get', 'database': dataset}

    async def op_create(self, args, context):
        definition = args.get('databaseDefinition')
        if not isinstance(definition, dict) or not definition.get('name'):
            raise ToolArgumentError("databaseDefinition must be an object with a name")
        await context.client.execute_tmsl(_xmla_endpoint(args, context), {
            'createOrReplace': {
                'object': {'database': definition['name']},
                'database': {'compatibilityLevel': COMPATIBILITY_LEVEL, **definition},
            }
        })
        return {'operation': 'create', 'database': definition['name'], 'status': 'created'}

    async def op_delete(self, args, context):
        self.require(args, 'databaseName', operation='delete')
        await context.client.execute_tmsl(
            _xmla_endpoint(args, context), {'delete': {'object': {'database': args['databaseName']}}}
        )
        return {'operation': 'delete', 'database': args['databaseName'], 'status': 'deleted'}

    async def op_refresh(self, args, context):
        self.require(args, 'semanticModelId', operation='refresh')
        await context.client.refresh_dataset(args['semanticModelId'], args.get('workspaceId'))
        return {
            'operation': 'refresh',
            'semanticModelId': args['semanticModelId'],
            'status': 'refresh_started',
            'message': 'Refresh started. Use get_refresh_history to follow its status.',
        }

    async def op_get_refresh_history(self, args, context):
        self.require(args, 'semanticModelId', operation='get_refresh_history')
        history = await context.client.get_refresh_history(args['semanticModelId'], args.get('workspaceId'))
        return {'operation': 'get_refresh_history', 'refreshes': history}


# ==================== DAX QUERIES ====================

_FORMAT_FUNCTIONS = re.compile(r'\b(CALCULATE|FILTER|SUMX|AVERAGEX|COUNTROWS|RELATED|VALUES|ALL|ALLEXCEPT)\s*\(', re.IGNORECASE)


def format_dax(query: str) -> str:
    """Rough layout: break after commas and after the opening paren of common functions"""
    formatted = re.sub(r',\s*(?=[A-Z(])', ',\n    ', query)
    formatted = _FORMAT_FUNCTIONS.sub(lambda m: f"{m.group(1)}(\n    ", formatted)
    return re.sub(r'\)\s*,', '\n),', formatted)


def rate_duration(duration_ms: int) -> str:
    if duration_ms < 1000:
        return 'Excellent'
    if duration_ms < 3000:
        return 'Good'
    if duration_ms < 8000:
        return 'Fair'
    return 'Poor'


class DaxQueryOperationsHandler(OperationHandler):
    operations = ('execute', 'execute_with_metrics', 'analyze_performance', 'validate_syntax', 'format')

    def _max_rows(self, args: Dict[str, Any]) -> int:
        return int(args.get('maxRows') or DEFAULT_RESULT_ROWS)

    async def op_execute(self, args, context):
        self.require(args, 'semanticModelId', 'daxQuery', operation='execute')
        start = time.time()
        result = await context.client.execute_query(args['semanticModelId'], args['daxQuery'])
        rows = first_table_rows(result)
        return {
            'operation': 'execute',
            'rowCount': len(rows),
            'executionTimeMs': _elapsed_ms(start),
            'results': rows[:self._max_rows(args)],
        }

    async def op_execute_with_metrics(self, args, context):
        """Run warm, then cold, and compare"""
        self.require(args, 'semanticModelId', 'daxQuery', operation='execute_with_metrics')
        start = time.time()
        warm = await context.client.execute_query(args['semanticModelId'], args['daxQuery'])
        warm_ms = _elapsed_ms(start)

        start = time.time()
        await context.client.execute_query(args['semanticModelId'], args['daxQuery'], True)
        cold_ms = _elapsed_ms(start)

        if cold_ms > 5000:
            recommendation = 'Slow query. Consider materializing results, optimizing measures and checking relationships.'
        elif cold_ms > 2000:
            recommendation = 'Moderate performance. Some optimization may be possible.'
        else:
            recommendation = 'Performance is satisfactory.'

        cache_impact = (cold_ms - warm_ms) / cold_ms * 100 if cold_ms else 0.0
        rows = first_table_rows(warm)
        return {
            'operation': 'execute_with_metrics',
            'rowCount': len(rows),
            'results': rows[:self._max_rows(args)],
            'metrics': {
                'warmCacheMs': warm_ms,
                'coldCacheMs': cold_ms,
                'cacheImpact': f"{cache_impact:.1f}% slower without cache",
                'recommendation': recommendation,
            },
        }

    async def op_analyze_performance(self, args, context):
        self.require(args, 'semanticModelId', 'daxQuery', operation='analyze_performance')
        start = time.time()
        result = await context.client.execute_query(args['semanticModelId'], args['daxQuery'], True)
        total_ms = _elapsed_ms(start)
        rows = first_table_rows(result)

        issues: List[str] = []
        suggestions: List[str] = []
        if total_ms > 10000:
            issues.append('Very slow query (>10s)')
            suggestions.append('Consider materializing results in calculated tables')
            suggestions.append('Check that every required relationship is active')
        elif total_ms > 5000:
            issues.append('Slow query (>5s)')
            suggestions.append('Review CALCULATE usage and filter contexts')

        if len(rows) > 100000:
            issues.append('Very large result')
            suggestions.append('Use TOPN or filters to reduce the returned volume')

        upper = args['daxQuery'].upper()
        if 'SUMX(' in upper or 'AVERAGEX(' in upper:
            suggestions.append('Iterators such as SUMX and AVERAGEX can be slow on large tables; check for alternatives')
        if 'CALCULATE' not in upper and 'FILTER(' in upper:
            suggestions.append('Consider replacing FILTER with CALCULATE and direct filter arguments')

        return {
            'operation': 'analyze_performance',
            'executionTimeMs': total_ms,
            'rowCount': len(rows),
            'issues': issues,
            'suggestions': suggestions,
            'rating': rate_duration(total_ms),
        }

    async def op_validate_syntax(self, args, context):
        self.require(args, 'semanticModelId', 'daxQuery', operation='validate_syntax')
        try:
            await context.client.execute_query(args['semanticModelId'], f"EVALUATE TOPN(1, {args['daxQuery']})")
        except UpstreamFailure as e:
            return {'operation': 'validate_syntax', 'valid': False, 'query': args['daxQuery'], 'error': e.message}
        return {'operation': 'validate_syntax', 'valid': True, 'query': args['daxQuery']}

    async def op_format(self, args, context):
        self.require(args, 'daxQuery', operation='format')
        return {'operation': 'format', 'original': args['daxQuery'], 'formatted': format_dax(args['daxQuery'])}


# ==================== BULK ====================

# objectType argument -> TMSL key
_BULK_OBJECT_TYPES = {'tables': 'table', 'columns': 'column', 'measures': 'measure'}


def bulk_object_path(database: str, object_type: str, object_name: str, table_name: Optional[str] = None) -> Dict[str, Any]:
    """TMSL object path for a bulk entry; tables are addressed by their own name"""
    kind = _BULK_OBJECT_TYPES[object_type]
    if kind == 'table':
        return {'database': database, 'table': object_name}
    if not table_name:
        raise ToolArgumentError(f"tableName is required for {object_type} '{object_name}'")
    return {'database': database, 'table': table_name, kind: object_name}


class BulkOperationsHandler(OperationHandler):
    operations = (
        'bulk_rename', 'bulk_hide', 'bulk_unhide', 'bulk_document',
        'bulk_format_strings', 'apply_naming_convention',
    )

    def _object_type(self, args: Dict[str, Any]) -> str:
        object_type = args.get('objectType') or 'tables'
        if object_type not in _BULK_OBJECT_TYPES:
            raise ToolArgumentError(f"objectType must be one of: {', '.join(_BULK_OBJECT_TYPES)}")
        return object_type

    async def _sequence(self, args, context, commands: List[Dict[str, Any]]):
        self.require(args, 'databaseName', operation=args.get('operation'))
        await context.client.execute_tmsl(_xmla_endpoint(args, context), {'sequence': {'operations': commands}})

    async def op_bulk_rename(self, args, context):
        self.require(args, 'renames', operation='bulk_rename')
        object_type = self._object_type(args)
        kind = _BULK_OBJECT_TYPES[object_type]
        commands = [
            {
                'alter': {
                    'object': bulk_object_path(args.get('databaseName'), object_type, r['objectName'], r.get('tableName')),
                    kind: {'name': r['newName']},
                }
            }
            for r in args['renames']
        ]
        await self._sequence(args, context, commands)
        return {
            'operation': 'bulk_rename',
            'count': len(commands),
            'renamed': [{'from': r['objectName'], 'to': r['newName']} for r in args['renames']],
            'status': 'completed',
        }

    async def _set_hidden(self, args, context, hidden: bool):
        """Each path is Table or Table.Column; paths are applied independently"""
        operation = args.get('operation')
        self.require(args, 'objectPaths', 'databaseName', operation=operation)
        endpoint = _xmla_endpoint(args, context)

        def command(path: str) -> Dict[str, Any]:
            table, _, column = path.partition('.')
            if column:
                return {'alter': {'object': {'database': args['databaseName'], 'table': table, 'column': column},
                                  'column': {'name': column, 'isHidden': hidden}}}
            return {'alter': {'object': {'database': args['databaseName'], 'table': table},
                              'table': {'name': table, 'isHidden': hidden}}}

        results = await asyncio.gather(
            *(context.client.execute_tmsl(endpoint, command(path)) for path in args['objectPaths']),
            return_exceptions=True,
        )
        failures = [
            {'path': path, 'error': str(result)}
            for path, result in zip(args['objectPaths'], results)
            if isinstance(result, Exception)
        ]
        for failure in failures:
            logger.warning(f"{operation} failed for {failure['path']}: {failure['error']}")

        return {
            'operation': operation,
            'total': len(results),
            'succeeded': len(results) - len(failures),
            'failed': len(failures),
            'failures': failures,
        }

    async def op_bulk_hide(self, args, context):
        return await self._set_hidden(args, context, True)

    async def op_bulk_unhide(self, args, context):
        return await self._set_hidden(args, context, False)

    async def op_bulk_document(self, args, context):
        self.require(args, 'documentations', operation='bulk_document')
        object_type = self._object_type(args)
        kind = _BULK_OBJECT_TYPES[object_type]
        commands = [
            {
                'alter': {
                    'object': bulk_object_path(args.get('databaseName'), object_type, d['objectName'], d.get('tableName')),
                    kind: {'name': d['objectName'], 'description': d['description']},
                }
            }
            for d in args['documentations']
        ]
        await self._sequence(args, context, commands)
        return {
            'operation': 'bulk_document',
            'count': len(commands),
            'status': 'completed',
            'message': f"{len(commands)} descriptions updated",
        }

    async def op_bulk_format_strings(self, args, context):
        self.require(args, 'formatStrings', operation='bulk_format_strings')
        commands = [
            {
                'alter': {
                    'object': bulk_object_path(args.get('databaseName'), 'measures', f['measureName'], f.get('tableName')),
                    'measure': {'name': f['measureName'], 'formatString': f['formatString']},
                }
            }
            for f in args['formatStrings']
        ]
        await self._sequence(args, context, commands)
        return {'operation': 'bulk_format_strings', 'count': len(commands), 'status': 'completed'}

    async def op_apply_naming_convention(self, args, context):
        self.require(args, 'namingConvention', operation='apply_naming_convention')
        convention = args['namingConvention']
        return {
            'operation': 'apply_naming_convention',
            'convention': convention,
            'message': 'Generate the new names for the convention, then apply them with bulk_rename.',
            'nextStep': f'Ask the assistant: "Generate renames for the model objects following the {convention} convention"',
        }


# ==================== TRACE ====================

class TraceOperationsHandler(OperationHandler):
    operations = ('analyze_query', 'get_refresh_history', 'list_active_connections')

    async def op_analyze_query(self, args, context):
        self.require(args, 'semanticModelId', 'daxQuery', operation='analyze_query')
        start = time.time()
        result = await context.client.execute_query(args['semanticModelId'], args['daxQuery'], True)
        elapsed = _elapsed_ms(start)
        return {
            'operation': 'analyze_query',
            'metrics': {
                'totalDurationMs': elapsed,
                'rowsReturned': len(first_table_rows(result)),
                # The REST API exposes no engine breakdown; a fixed split is an estimate
                'estimatedStorageEngineMs': round(elapsed * 0.6),
                'estimatedFormulaEngineMs': round(elapsed * 0.4),
            },
            'recommendation': (
                'Slow query. Check CALCULATE with many filters and iteration over large tables.'
                if elapsed > 5000 else 'Performance within expectations.'
            ),
        }

    async def op_get_refresh_history(self, args, context):
        self.require(args, 'semanticModelId', operation='get_refresh_history')
        history = await context.client.get_refresh_history(args['semanticModelId'], args.get('workspaceId'))
        return {'operation': 'get_refresh_history', 'refreshes': history}

    async def op_list_active_connections(self, args, context):
        return {
            'operation': 'list_active_connections',
            'note': 'Listing active connections requires XMLA access with server administrator permissions.',
            'message': 'Use SSMS or the Azure portal to view active connections for the workspace.',
        }
