"""
Model object tools over XMLA/TMSL
One parametrised handler per kind of object (table, column, measure, ...)
"""
import logging
from typing import Any, Dict, Optional

from powerbi_errors import ToolArgumentError, UpstreamFailure
from powerbi_rest_connector import first_table_rows
from powerbi_tools.registry import OperationHandler, ToolContext

logger = logging.getLogger(__name__)


def _object_schema(description: str) -> Dict[str, Any]:
    return {"type": "object", "description": description}


class TmslObjectHandler(OperationHandler):
    """
    list / get / create / update / delete for one TMSL object type

    Subclasses set the TMSL key, the TMSCHEMA rowset and argument names, and
    add their own op_<name> methods for extra operations.
    """

    object_type = ""
    request_type = ""
    restriction_name = ""
    name_arg = ""
    definition_arg = ""
    # Object lives under a table (column, measure, partition)
    under_table = False
    operations = ('list', 'get', 'create', 'update', 'delete')

    @classmethod
    def build_schema(cls, **extra_properties) -> Dict[str, Any]:
        properties: Dict[str, Any] = {
            "operation": cls.operation_property(),
            "xmlaEndpoint": {
                "type": "string",
                "description": "XMLA endpoint, e.g. powerbi://api.powerbi.com/v1.0/myorg/Workspace (default: configured endpoint)"
            },
            "databaseName": {"type": "string", "description": "Database (semantic model) name"},
        }
        if cls.under_table or cls.name_arg == 'tableName':
            properties["tableName"] = {"type": "string", "description": "Table name"}
        properties[cls.name_arg] = {"type": "string", "description": f"Name of the {cls.object_type}"}
        properties[cls.definition_arg] = _object_schema(f"TMSL definition of the {cls.object_type}")
        properties.update(extra_properties)
        return {"type": "object", "properties": properties, "required": ["operation", "databaseName"]}

    # ==================== HELPERS ====================

    def _endpoint(self, args: Dict[str, Any], context: ToolContext) -> str:
        endpoint = args.get('xmlaEndpoint') or context.default_xmla_endpoint
        if not endpoint:
            raise ToolArgumentError("xmlaEndpoint is required (no default XMLA endpoint is configured)")
        self.require(args, 'databaseName', operation=args.get('operation'))
        return endpoint

    def _path(self, args: Dict[str, Any], name: str) -> Dict[str, Any]:
        path: Dict[str, Any] = {'database': args['databaseName']}
        if self.under_table:
            path['table'] = args['tableName']
        path[self.object_type] = name
        return path

    def _definition(self, args: Dict[str, Any]) -> Dict[str, Any]:
        definition = args.get(self.definition_arg)
        if not isinstance(definition, dict) or not definition.get('name'):
            raise ToolArgumentError(f"{self.definition_arg} must be an object with a name")
        return definition

    async def _run(self, args: Dict[str, Any], context: ToolContext, command: Dict[str, Any]) -> Any:
        return await context.client.execute_tmsl(self._endpoint(args, context), command)

    async def _set_properties(self, args: Dict[str, Any], context: ToolContext, status: str, **properties) -> Dict[str, Any]:
        operation = args.get('operation')
        self.require(args, self.name_arg, *(('tableName',) if self.under_table else ()), operation=operation)
        name = args[self.name_arg]
        await self._run(args, context, {
            'alter': {
                'object': self._path(args, name),
                self.object_type: {'name': name, **properties},
            }
        })
        return {'operation': operation, self.object_type: name, 'status': status}

    # ==================== OPERATIONS ====================

    async def op_list(self, args: Dict[str, Any], context: ToolContext) -> Any:
        restrictions = {'DatabaseName': args.get('databaseName')}
        if self.under_table and args.get('tableName'):
            restrictions['TableName'] = args['tableName']
        return await context.client.discover(self._endpoint(args, context), self.request_type, restrictions)

    async def op_get(self, args: Dict[str, Any], context: ToolContext) -> Any:
        self.require(args, self.name_arg, operation='get')
        restrictions = {'DatabaseName': args.get('databaseName'), self.restriction_name: args[self.name_arg]}
        return await context.client.discover(self._endpoint(args, context), self.request_type, restrictions)

    async def op_create(self, args: Dict[str, Any], context: ToolContext) -> Any:
        if self.under_table:
            self.require(args, 'tableName', operation='create')
        definition = self._definition(args)
        await self._run(args, context, {
            'createOrReplace': {
                'object': self._path(args, definition['name']),
                self.object_type: self.prepare_definition(definition),
            }
        })
        return {'operation': 'create', self.object_type: definition['name'], 'status': 'created'}

    async def op_update(self, args: Dict[str, Any], context: ToolContext) -> Any:
        self.require(args, self.name_arg, *(('tableName',) if self.under_table else ()), operation='update')
        definition = self._definition(args)
        await self._run(args, context, {
            'alter': {
                'object': self._path(args, args[self.name_arg]),
                self.object_type: definition,
            }
        })
        return {'operation': 'update', self.object_type: args[self.name_arg], 'status': 'updated'}

    async def op_delete(self, args: Dict[str, Any], context: ToolContext) -> Any:
        self.require(args, self.name_arg, *(('tableName',) if self.under_table else ()), operation='delete')
        await self._run(args, context, {'delete': {'object': self._path(args, args[self.name_arg])}})
        return {'operation': 'delete', self.object_type: args[self.name_arg], 'status': 'deleted'}

    def prepare_definition(self, definition: Dict[str, Any]) -> Dict[str, Any]:
        """Hook for defaults applied on create"""
        return definition


class TableOperationsHandler(TmslObjectHandler):
    object_type = 'table'
    request_type = 'TMSCHEMA_TABLES'
    restriction_name = 'TableName'
    name_arg = 'tableName'
    definition_arg = 'tableDefinition'
    operations = TmslObjectHandler.operations + ('hide', 'unhide')

    async def op_hide(self, args, context):
        return await self._set_properties(args, context, 'hidden', isHidden=True)

    async def op_unhide(self, args, context):
        return await self._set_properties(args, context, 'visible', isHidden=False)


class ColumnOperationsHandler(TmslObjectHandler):
    object_type = 'column'
    request_type = 'TMSCHEMA_COLUMNS'
    restriction_name = 'ColumnName'
    name_arg = 'columnName'
    definition_arg = 'columnDefinition'
    under_table = True
    operations = TmslObjectHandler.operations + ('hide', 'unhide', 'update_format')

    async def op_hide(self, args, context):
        return await self._set_properties(args, context, 'hidden', isHidden=True)

    async def op_unhide(self, args, context):
        return await self._set_properties(args, context, 'visible', isHidden=False)

    async def op_update_format(self, args, context):
        self.require(args, 'formatString', operation='update_format')
        return await self._set_properties(args, context, 'updated', formatString=args['formatString'])


class MeasureOperationsHandler(TmslObjectHandler):
    object_type = 'measure'
    request_type = 'TMSCHEMA_MEASURES'
    restriction_name = 'MeasureName'
    name_arg = 'measureName'
    definition_arg = 'measureDefinition'
    under_table = True
    operations = TmslObjectHandler.operations + ('validate_dax', 'document')

    async def op_validate_dax(self, args, context):
        """Evaluate the expression once to check it parses and binds"""
        self.require(args, 'semanticModelId', 'expression', operation='validate_dax')
        query = f'EVALUATE ROW("Result", {args["expression"]})'
        try:
            result = await context.client.execute_query(args['semanticModelId'], query)
        except UpstreamFailure as e:
            return {'operation': 'validate_dax', 'valid': False, 'expression': args['expression'], 'error': e.message}
        return {
            'operation': 'validate_dax',
            'valid': True,
            'expression': args['expression'],
            'sample': first_table_rows(result)[:1],
        }

    async def op_document(self, args, context):
        self.require(args, 'description', operation='document')
        return await self._set_properties(args, context, 'documented', description=args['description'])


class RelationshipOperationsHandler(TmslObjectHandler):
    object_type = 'relationship'
    request_type = 'TMSCHEMA_RELATIONSHIPS'
    restriction_name = 'RelationshipName'
    name_arg = 'relationshipName'
    definition_arg = 'relationshipDefinition'
    operations = TmslObjectHandler.operations + ('activate', 'deactivate')

    async def op_activate(self, args, context):
        return await self._set_properties(args, context, 'active', isActive=True)

    async def op_deactivate(self, args, context):
        return await self._set_properties(args, context, 'inactive', isActive=False)


class PartitionOperationsHandler(TmslObjectHandler):
    object_type = 'partition'
    request_type = 'TMSCHEMA_PARTITIONS'
    restriction_name = 'PartitionName'
    name_arg = 'partitionName'
    definition_arg = 'partitionDefinition'
    under_table = True
    operations = TmslObjectHandler.operations + ('refresh',)

    async def op_refresh(self, args, context):
        self.require(args, 'tableName', 'partitionName', operation='refresh')
        refresh_type = args.get('refreshType') or 'full'
        await self._run(args, context, {
            'refresh': {'type': refresh_type, 'objects': [self._path(args, args['partitionName'])]}
        })
        return {'operation': 'refresh', 'partition': args['partitionName'], 'type': refresh_type, 'status': 'refreshed'}


class CalculationGroupOperationsHandler(TmslObjectHandler):
    """Calculation groups are tables carrying a calculationGroup property"""

    object_type = 'table'
    request_type = 'TMSCHEMA_CALCULATION_GROUPS'
    restriction_name = 'TableName'
    name_arg = 'groupName'
    definition_arg = 'definition'
    operations = ('list', 'create', 'update', 'delete', 'add_item', 'update_item', 'delete_item')

    def prepare_definition(self, definition: Dict[str, Any]) -> Dict[str, Any]:
        table = {
            'name': definition['name'],
            'calculationGroup': {'precedence': definition.get('precedence', 0)},
            'columns': [{'name': 'Name', 'dataType': 'string', 'sourceColumn': 'Name'}],
            'partitions': [{'name': 'Partition', 'source': {'type': 'calculated', 'expression': '{ "" }'}}],
        }
        if definition.get('description'):
            table['description'] = definition['description']
        return table

    def _item_path(self, args: Dict[str, Any], item_name: str) -> Dict[str, Any]:
        return {'database': args['databaseName'], 'table': args['groupName'], 'calculationItem': item_name}

    async def _write_item(self, args, context, verb: str, status: str):
        operation = args.get('operation')
        self.require(args, 'groupName', operation=operation)
        definition = self._definition(args)
        item = {
            'name': definition['name'],
            'expression': definition.get('expression', ''),
            'ordinal': definition.get('ordinal', 0),
        }
        if definition.get('description'):
            item['description'] = definition['description']
        await self._run(args, context, {
            verb: {'object': self._item_path(args, definition['name']), 'calculationItem': item}
        })
        return {'operation': operation, 'group': args['groupName'], 'item': definition['name'], 'status': status}

    async def op_add_item(self, args, context):
        return await self._write_item(args, context, 'createOrReplace', 'created')

    async def op_update_item(self, args, context):
        return await self._write_item(args, context, 'alter', 'updated')

    async def op_delete_item(self, args, context):
        self.require(args, 'groupName', 'itemName', operation='delete_item')
        await self._run(args, context, {'delete': {'object': self._item_path(args, args['itemName'])}})
        return {'operation': 'delete_item', 'group': args['groupName'], 'item': args['itemName'], 'status': 'deleted'}


class SecurityRoleOperationsHandler(TmslObjectHandler):
    object_type = 'role'
    request_type = 'TMSCHEMA_ROLES'
    restriction_name = 'RoleName'
    name_arg = 'roleName'
    definition_arg = 'roleDefinition'
    operations = TmslObjectHandler.operations + ('test_rls',)

    def prepare_definition(self, definition: Dict[str, Any]) -> Dict[str, Any]:
        return {'modelPermission': 'read', **definition}

    async def op_test_rls(self, args, context):
        """Run a query as another user so their row-level security applies"""
        self.require(args, 'semanticModelId', 'daxQuery', 'testUserEmail', operation='test_rls')
        result = await context.client.execute_query(
            args['semanticModelId'], args['daxQuery'], impersonated_user=args['testUserEmail']
        )
        rows = first_table_rows(result)
        return {
            'operation': 'test_rls',
            'user': args['testUserEmail'],
            'rowCount': len(rows),
            'results': rows[:100],
            'note': 'Row-level security is not applied when authenticated as a service principal without impersonation.',
        }


class PerspectiveOperationsHandler(TmslObjectHandler):
    object_type = 'perspective'
    request_type = 'TMSCHEMA_PERSPECTIVES'
    restriction_name = 'PerspectiveName'
    name_arg = 'perspectiveName'
    definition_arg = 'perspectiveDefinition'


class CultureOperationsHandler(TmslObjectHandler):
    object_type = 'culture'
    request_type = 'TMSCHEMA_CULTURES'
    restriction_name = 'CultureName'
    name_arg = 'cultureName'
    definition_arg = 'cultureDefinition'
    operations = ('list_cultures', 'add_culture', 'remove_culture', 'bulk_translate')

    async def op_list_cultures(self, args, context):
        return await self.op_list(args, context)

    async def op_add_culture(self, args, context):
        self.require(args, 'cultureName', operation='add_culture')
        name = args['cultureName']
        await self._run(args, context, {'createOrReplace': {'object': self._path(args, name), 'culture': {'name': name}}})
        return {'operation': 'add_culture', 'culture': name, 'status': 'added'}

    async def op_remove_culture(self, args, context):
        self.require(args, 'cultureName', operation='remove_culture')
        await self._run(args, context, {'delete': {'object': self._path(args, args['cultureName'])}})
        return {'operation': 'remove_culture', 'culture': args['cultureName'], 'status': 'removed'}

    async def op_bulk_translate(self, args, context):
        self.require(args, 'cultureName', 'translations', operation='bulk_translate')
        name = args['cultureName']
        culture = {'name': name, 'translations': {'model': {'name': 'Model', 'tables': build_table_translations(args['translations'])}}}
        await self._run(args, context, {'createOrReplace': {'object': self._path(args, name), 'culture': culture}})
        return {'operation': 'bulk_translate', 'culture': name, 'count': len(args['translations']), 'status': 'translated'}


def build_table_translations(translations) -> list:
    """
    Group flat translation entries into the nested per-table structure of a culture

    Args:
        translations: Entries with objectType (table|column|measure|hierarchy),
            tableName, objectName, caption and optional description/displayFolder
    """
    tables: Dict[str, Dict[str, Any]] = {}

    def translated(entry: Dict[str, Any]) -> Dict[str, Any]:
        result = {'name': entry['objectName'], 'translatedCaption': entry['caption']}
        if entry.get('description'):
            result['translatedDescription'] = entry['description']
        if entry.get('displayFolder'):
            result['translatedDisplayFolder'] = entry['displayFolder']
        return result

    for entry in translations:
        if not entry.get('objectName') or not entry.get('caption'):
            raise ToolArgumentError("Each translation needs objectName and caption")
        object_type = entry.get('objectType', 'table')
        table_name: Optional[str] = entry['objectName'] if object_type == 'table' else entry.get('tableName')
        if not table_name:
            raise ToolArgumentError(f"tableName is required to translate {object_type} '{entry['objectName']}'")

        table = tables.setdefault(table_name, {'name': table_name})
        if object_type == 'table':
            table.update(translated(entry))
        else:
            table.setdefault(f"{object_type}s", []).append(translated(entry))

    return list(tables.values())
