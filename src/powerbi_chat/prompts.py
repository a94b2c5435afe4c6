"""
System preamble sent with every chat request
"""
SYSTEM_PROMPT_TEMPLATE = """You are a Power BI expert assistant connected to the Power BI MCP server.
Current workspace context:
- Semantic Model IDs: {model_ids}
- XMLA Endpoint: {xmla_endpoint}
Provide concise, actionable answers about DAX, Power BI modeling, and data analysis.
When writing DAX, always format it with proper indentation.
Answer in the same language the user uses."""


def build_system_prompt(connection=None) -> str:
    """
    Build the preamble for the current connection settings

    Args:
        connection: ConnectionConfig (or None when nothing is configured)
    """
    model_ids = list(getattr(connection, 'default_semantic_model_ids', None) or [])
    xmla_endpoint = getattr(connection, 'xmla_endpoint', '') or ''
    return SYSTEM_PROMPT_TEMPLATE.format(
        model_ids=', '.join(model_ids) if model_ids else 'none configured',
        xmla_endpoint=xmla_endpoint or 'not configured',
    )
