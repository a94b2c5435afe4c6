"""
Remote semantic model tools: schema, Copilot query generation and DAX execution
"""
import logging
import re
import time
from typing import Any, Dict, List

from powerbi_rest_connector import first_table_rows
from powerbi_tools.registry import ToolContext, ToolHandler

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROWS = 1000
SLOW_QUERY_MS = 5000


def _visible(items: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [item for item in items if not item.get('isHidden')]


class GetSemanticModelSchemaHandler(ToolHandler):
    """Tables, columns, measures and relationships of a semantic model"""

    input_schema = {
        "type": "object",
        "properties": {
            "semanticModelId": {
                "type": "string",
                "description": "Semantic model (dataset) id, as in app.powerbi.com/groups/{workspaceId}/datasets/{semanticModelId}"
            },
            "includeHidden": {
                "type": "boolean",
                "description": "Include hidden tables, columns and measures (default: false)",
                "default": False
            }
        },
        "required": ["semanticModelId"]
    }

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        self.require(args, 'semanticModelId')
        schema = await context.client.get_semantic_model_schema(args['semanticModelId'])

        tables = schema.get('tables', [])
        measures = schema.get('measures', [])
        if not args.get('includeHidden'):
            tables = [
                {
                    **table,
                    'columns': _visible(table.get('columns', [])),
                    'measures': _visible(table.get('measures', [])),
                }
                for table in _visible(tables)
            ]
            measures = _visible(measures)

        relationships = schema.get('relationships', [])
        summary = {
            'totalTables': len(tables),
            'totalColumns': sum(len(t.get('columns', [])) for t in tables),
            'totalMeasures': len(measures) + sum(len(t.get('measures', [])) for t in tables),
            'totalRelationships': len(relationships),
        }

        return {
            'semanticModelId': args['semanticModelId'],
            'summary': summary,
            'schema': {'tables': tables, 'measures': measures, 'relationships': relationships},
        }


class GenerateQueryHandler(ToolHandler):
    """Natural language to DAX through Copilot for Power BI"""

    input_schema = {
        "type": "object",
        "properties": {
            "semanticModelId": {"type": "string", "description": "Semantic model id"},
            "question": {"type": "string", "description": "Natural language question to answer with DAX"},
            "schemaContext": {
                "type": "object",
                "description": "Relevant tables, columns and measures to improve generation",
                "properties": {
                    "tables": {"type": "array", "items": {"type": "string"}},
                    "columns": {"type": "array", "items": {"type": "string"}, "description": "Format: Table[Column]"},
                    "measures": {"type": "array", "items": {"type": "string"}}
                }
            }
        },
        "required": ["semanticModelId", "question"]
    }

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        self.require(args, 'semanticModelId', 'question')
        generated = await context.client.generate_dax_query(
            args['semanticModelId'], args['question'], args.get('schemaContext')
        )
        return {
            'semanticModelId': args['semanticModelId'],
            'question': args['question'],
            'generatedDaxQuery': generated,
            'note': 'Review the generated DAX before running it; complex questions may need manual adjustment.',
        }


def limit_query(dax_query: str, max_rows: int) -> str:
    """
    Wrap a single-line EVALUATE in TOPN so large tables are not returned whole

    Queries that already limit rows, or span several lines, are left alone.
    """
    query = dax_query.strip()
    upper = query.upper()
    if 'TOPN(' in upper or 'TOP ' in upper or '\n' in query:
        return query
    if not upper.startswith('EVALUATE'):
        return query
    return re.sub(r'^EVALUATE\s+', f'EVALUATE TOPN({max_rows}, ', query, count=1, flags=re.IGNORECASE) + ')'


class ExecuteQueryHandler(ToolHandler):
    """Run a DAX query against a semantic model"""

    input_schema = {
        "type": "object",
        "properties": {
            "semanticModelId": {"type": "string", "description": "Semantic model id"},
            "daxQuery": {
                "type": "string",
                "description": "DAX to execute, e.g. EVALUATE SUMMARIZECOLUMNS('Table'[Column], \"Total\", [Measure])"
            },
            "clearCache": {
                "type": "boolean",
                "description": "Evaluate with a cold cache to measure real execution time (default: false)",
                "default": False
            },
            "maxRows": {
                "type": "number",
                "description": f"Maximum number of rows to return (default: {DEFAULT_MAX_ROWS})",
                "default": DEFAULT_MAX_ROWS
            }
        },
        "required": ["semanticModelId", "daxQuery"]
    }

    async def execute(self, args: Dict[str, Any], context: ToolContext) -> Any:
        self.require(args, 'semanticModelId', 'daxQuery')
        max_rows = int(args.get('maxRows') or DEFAULT_MAX_ROWS)
        query = limit_query(args['daxQuery'], max_rows)

        start = time.time()
        result = await context.client.execute_query(args['semanticModelId'], query, bool(args.get('clearCache')))
        execution_ms = int((time.time() - start) * 1000)
        rows = first_table_rows(result)

        performance: Dict[str, Any] = {'executionTimeMs': execution_ms}
        if execution_ms > SLOW_QUERY_MS:
            performance['warning'] = 'Query took more than 5 seconds. Consider optimizing it.'

        return {
            'semanticModelId': args['semanticModelId'],
            'daxQuery': args['daxQuery'],
            'executionTimeMs': execution_ms,
            'rowCount': len(rows),
            'results': rows,
            'performance': performance,
        }
