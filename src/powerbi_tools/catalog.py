"""
Tool catalogue
Builds the registry of every Power BI tool exposed by the server
"""
from typing import Any, Dict, List

from powerbi_tools.local import LocalPbiOperationsHandler
from powerbi_tools.modeling import (
    BulkOperationsHandler,
    ConnectionOperationsHandler,
    DatabaseOperationsHandler,
    DaxQueryOperationsHandler,
    TraceOperationsHandler,
)
from powerbi_tools.registry import ToolDescriptor, ToolRegistry
from powerbi_tools.remote import ExecuteQueryHandler, GenerateQueryHandler, GetSemanticModelSchemaHandler
from powerbi_tools.tmsl_objects import (
    CalculationGroupOperationsHandler,
    ColumnOperationsHandler,
    CultureOperationsHandler,
    MeasureOperationsHandler,
    PartitionOperationsHandler,
    PerspectiveOperationsHandler,
    RelationshipOperationsHandler,
    SecurityRoleOperationsHandler,
    TableOperationsHandler,
)

_STRING = {"type": "string"}


def _schema(handler_cls, required: List[str], **properties) -> Dict[str, Any]:
    return {
        "type": "object",
        "properties": {"operation": handler_cls.operation_property(), **properties},
        "required": ["operation", *required],
    }


def _entries(summary: str, /, **properties) -> Dict[str, Any]:
    return {
        "type": "array",
        "description": summary,
        "items": {"type": "object", "properties": properties},
    }


def build_descriptors() -> List[ToolDescriptor]:
    return [
        # ==================== LOCAL ====================
        ToolDescriptor(
            id='local_pbi_operations',
            name='Local Power BI Desktop',
            description='Detect Power BI Desktop running on this machine and query its local model: detect, get_schema, list_tables, execute_dax.',
            category='local',
            input_schema=LocalPbiOperationsHandler.input_schema,
            handler=LocalPbiOperationsHandler(),
        ),

        # ==================== REMOTE ====================
        ToolDescriptor(
            id='get_semantic_model_schema',
            name='Get Semantic Model Schema',
            description='Retrieve tables, columns, measures and relationships of a Power BI semantic model.',
            category='remote',
            input_schema=GetSemanticModelSchemaHandler.input_schema,
            handler=GetSemanticModelSchemaHandler(),
        ),
        ToolDescriptor(
            id='generate_query',
            name='Generate DAX Query',
            description='Generate a DAX query from a natural language question using Copilot for Power BI.',
            category='remote',
            input_schema=GenerateQueryHandler.input_schema,
            handler=GenerateQueryHandler(),
        ),
        ToolDescriptor(
            id='execute_query',
            name='Execute DAX Query',
            description='Execute a DAX query against a semantic model and return the rows. Requires Build permission on the model.',
            category='remote',
            input_schema=ExecuteQueryHandler.input_schema,
            handler=ExecuteQueryHandler(),
        ),

        # ==================== MODELING ====================
        ToolDescriptor(
            id='connection_operations',
            name='Connection Operations',
            description='List workspaces and datasets, get dataset info and test the Power BI connection.',
            category='modeling',
            input_schema=_schema(
                ConnectionOperationsHandler, [],
                workspaceId={"type": "string", "description": "Workspace id (default: My Workspace)"},
                datasetId={"type": "string", "description": "Dataset id (for get_dataset_info)"},
            ),
            handler=ConnectionOperationsHandler(),
        ),
        ToolDescriptor(
            id='database_operations',
            name='Database Operations',
            description='List, inspect, create, delete and refresh semantic models.',
            category='modeling',
            input_schema=_schema(
                DatabaseOperationsHandler, [],
                xmlaEndpoint=_STRING,
                workspaceId=_STRING,
                semanticModelId=_STRING,
                databaseName=_STRING,
                databaseDefinition={"type": "object", "description": "TMSL database definition with a name"},
            ),
            handler=DatabaseOperationsHandler(),
            is_destructive=True,
        ),
        ToolDescriptor(
            id='table_operations',
            name='Table Operations',
            description='List, get, create, update, delete, hide and unhide tables.',
            category='modeling',
            input_schema=TableOperationsHandler.build_schema(),
            handler=TableOperationsHandler(),
            is_destructive=True,
        ),
        ToolDescriptor(
            id='column_operations',
            name='Column Operations',
            description='List, get, create, update, delete, hide and unhide columns and update their format strings.',
            category='modeling',
            input_schema=ColumnOperationsHandler.build_schema(formatString=_STRING),
            handler=ColumnOperationsHandler(),
            is_destructive=True,
        ),
        ToolDescriptor(
            id='measure_operations',
            name='Measure Operations',
            description='List, get, create, update and delete measures, validate DAX expressions and document measures.',
            category='modeling',
            input_schema=MeasureOperationsHandler.build_schema(
                semanticModelId={"type": "string", "description": "Semantic model id (for validate_dax)"},
                expression={"type": "string", "description": "DAX expression (for validate_dax)"},
                description={"type": "string", "description": "Measure description (for document)"},
            ),
            handler=MeasureOperationsHandler(),
            is_destructive=True,
        ),
        ToolDescriptor(
            id='relationship_operations',
            name='Relationship Operations',
            description='List, get, create, update, delete, activate and deactivate relationships.',
            category='modeling',
            input_schema=RelationshipOperationsHandler.build_schema(),
            handler=RelationshipOperationsHandler(),
            is_destructive=True,
        ),
        ToolDescriptor(
            id='dax_query_operations',
            name='DAX Query Operations',
            description='Execute DAX with metrics, analyze performance, validate syntax and format DAX.',
            category='modeling',
            input_schema=_schema(
                DaxQueryOperationsHandler, ['daxQuery'],
                semanticModelId=_STRING,
                daxQuery=_STRING,
                maxRows={"type": "number", "description": "Maximum rows to return (default: 500)"},
            ),
            handler=DaxQueryOperationsHandler(),
        ),
        ToolDescriptor(
            id='bulk_operations',
            name='Bulk Operations',
            description='Rename, hide, unhide and document many model objects at once, or set many format strings.',
            category='modeling',
            input_schema=_schema(
                BulkOperationsHandler, ['databaseName'],
                xmlaEndpoint=_STRING,
                databaseName=_STRING,
                objectType={"type": "string", "enum": ["tables", "columns", "measures"]},
                renames=_entries("Entries for bulk_rename", tableName=_STRING, objectName=_STRING, newName=_STRING),
                objectPaths={"type": "array", "items": _STRING, "description": "Table or Table.Column paths"},
                documentations=_entries("Entries for bulk_document", tableName=_STRING, objectName=_STRING, description=_STRING),
                formatStrings=_entries("Entries for bulk_format_strings", tableName=_STRING, measureName=_STRING, formatString=_STRING),
                namingConvention={"type": "string", "enum": ["PascalCase", "camelCase", "snake_case", "Title Case", "UPPER_CASE"]},
            ),
            handler=BulkOperationsHandler(),
            is_destructive=True,
        ),

        # ==================== ADVANCED ====================
        ToolDescriptor(
            id='partition_operations',
            name='Partition Operations',
            description='List, get, create, update, delete and refresh table partitions.',
            category='modeling',
            input_schema=PartitionOperationsHandler.build_schema(
                refreshType={"type": "string", "enum": ["full", "dataOnly", "calculate", "clearValues", "automatic"]},
            ),
            handler=PartitionOperationsHandler(),
            is_destructive=True,
            is_advanced=True,
            default_enabled=False,
        ),
        ToolDescriptor(
            id='calculation_group_operations',
            name='Calculation Group Operations',
            description='List, create, update and delete calculation groups and their calculation items.',
            category='modeling',
            input_schema=CalculationGroupOperationsHandler.build_schema(itemName=_STRING),
            handler=CalculationGroupOperationsHandler(),
            is_destructive=True,
            is_advanced=True,
            default_enabled=False,
        ),
        ToolDescriptor(
            id='security_role_operations',
            name='Security Role Operations',
            description='Manage row-level security roles and test them by querying as another user.',
            category='modeling',
            input_schema=SecurityRoleOperationsHandler.build_schema(
                semanticModelId=_STRING,
                daxQuery=_STRING,
                testUserEmail={"type": "string", "description": "User to impersonate (for test_rls)"},
            ),
            handler=SecurityRoleOperationsHandler(),
            is_destructive=True,
            is_advanced=True,
            default_enabled=False,
        ),
        ToolDescriptor(
            id='perspective_operations',
            name='Perspective Operations',
            description='List, get, create, update and delete perspectives.',
            category='modeling',
            input_schema=PerspectiveOperationsHandler.build_schema(),
            handler=PerspectiveOperationsHandler(),
            is_advanced=True,
            default_enabled=False,
        ),
        ToolDescriptor(
            id='trace_operations',
            name='Trace Operations',
            description='Analyze query timings, read refresh history and inspect active connections.',
            category='modeling',
            input_schema=_schema(
                TraceOperationsHandler, [],
                semanticModelId=_STRING,
                workspaceId=_STRING,
                daxQuery=_STRING,
            ),
            handler=TraceOperationsHandler(),
            is_advanced=True,
            default_enabled=False,
        ),
        ToolDescriptor(
            id='culture_operations',
            name='Culture Operations',
            description='List, add and remove cultures and apply translations in bulk.',
            category='modeling',
            input_schema=CultureOperationsHandler.build_schema(
                translations=_entries(
                    "Entries for bulk_translate",
                    objectType={"type": "string", "enum": ["table", "column", "measure", "hierarchy"]},
                    tableName=_STRING,
                    objectName=_STRING,
                    caption=_STRING,
                    description=_STRING,
                    displayFolder=_STRING,
                ),
            ),
            handler=CultureOperationsHandler(),
            is_advanced=True,
            default_enabled=False,
        ),
    ]


def build_registry() -> ToolRegistry:
    """The registry is built once at startup and never mutated"""
    return ToolRegistry(build_descriptors())
