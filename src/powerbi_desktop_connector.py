"""
Power BI Desktop Connector
Connects to locally running Power BI Desktop instances via msmdsrv.exe
No authentication required - connects to localhost over XMLA/SOAP
"""
import logging
import os
import re
import xml.etree.ElementTree as ET
from pathlib import Path
from typing import Any, Dict, List, Optional
from xml.sax.saxutils import escape

import psutil
import requests

from powerbi_errors import UpstreamFailure

logger = logging.getLogger(__name__)

XMLA_NAMESPACE = "urn:schemas-microsoft-com:xml-analysis"
SOAP_ENVELOPE = """<?xml version="1.0" encoding="utf-8"?>
<Envelope xmlns="http://schemas.xmlsoap.org/soap/envelope/">
  <Body>{body}</Body>
</Envelope>"""

# XML names encode characters such as [ ] and spaces as _xHHHH_
_ENCODED_NAME = re.compile(r"_x([0-9A-Fa-f]{4})_")


def _local_name(tag: str) -> str:
    return tag.rsplit('}', 1)[-1]


def decode_xml_name(name: str) -> str:
    """Decode an XML-encoded column name, e.g. _x005B_Sales_x005D_ -> [Sales]"""
    return _ENCODED_NAME.sub(lambda m: chr(int(m.group(1), 16)), name)


def parse_rows(xml_text: str) -> List[Dict[str, str]]:
    """
    Extract the <row> elements of an XMLA rowset response

    Returns:
        One dict per row, keyed by decoded column name

    Raises:
        UpstreamFailure: if the response is not XML or carries an XMLA error
    """
    try:
        root = ET.fromstring(xml_text)
    except ET.ParseError as e:
        raise UpstreamFailure(f"Invalid XMLA response: {e}") from e

    errors = [el for el in root.iter() if _local_name(el.tag) in ('Error', 'Fault')]
    if errors:
        messages = []
        for el in errors:
            description = el.get('Description') or ''.join(el.itertext()).strip()
            if description:
                messages.append(description)
        raise UpstreamFailure(f"XMLA error: {'; '.join(messages) or 'unknown error'}")

    rows = []
    for row in root.iter():
        if _local_name(row.tag) != 'row':
            continue
        rows.append({
            decode_xml_name(_local_name(cell.tag)): (cell.text or '')
            for cell in row
        })
    return rows


class PowerBIDesktopConnector:
    """Connector for Power BI Desktop instances running locally"""

    def __init__(self, timeout: int = 10, session: Optional[requests.Session] = None):
        self.timeout = timeout
        self._session = session or requests.Session()

    @staticmethod
    def workspaces_dir() -> Optional[Path]:
        """Folder where Power BI Desktop writes one workspace per open report"""
        local_app_data = os.environ.get('LOCALAPPDATA')
        if not local_app_data:
            return None
        return Path(local_app_data) / "Microsoft" / "Power BI Desktop" / "AnalysisServicesWorkspaces"

    # ==================== DISCOVERY ====================

    def discover_instances(self) -> List[Dict[str, Any]]:
        """
        Discover all running Power BI Desktop instances

        Port files are read first; listening msmdsrv.exe processes fill in
        anything the port files missed.

        Returns:
            List of instances with port and source info
        """
        instances: Dict[int, Dict[str, Any]] = {}

        for instance in self._discover_from_port_files():
            instances.setdefault(instance['port'], instance)
        for instance in self._discover_from_processes():
            instances.setdefault(instance['port'], instance)

        result = list(instances.values())
        logger.info(f"Found {len(result)} Power BI Desktop instance(s)")
        return result

    def _discover_from_port_files(self) -> List[Dict[str, Any]]:
        workspaces = self.workspaces_dir()
        if workspaces is None or not workspaces.exists():
            return []

        instances = []
        try:
            for entry in workspaces.iterdir():
                port_file = entry / "Data" / "msmdsrv.port.txt"
                if not port_file.exists():
                    continue
                # Desktop writes the port file as UTF-16
                raw = port_file.read_bytes()
                text = raw.decode('utf-16') if raw[:2] in (b'\xff\xfe', b'\xfe\xff') else raw.decode('utf-8', 'ignore')
                text = text.replace('\x00', '').strip()
                if text.isdigit() and int(text) > 0:
                    instances.append({
                        'port': int(text),
                        'workspace_path': str(entry),
                        'source': 'port_file',
                    })
        except OSError as e:
            logger.warning(f"Could not read Power BI Desktop workspaces: {e}")

        return instances

    def _discover_from_processes(self) -> List[Dict[str, Any]]:
        instances = []
        for proc in psutil.process_iter(['pid', 'name']):
            try:
                if (proc.info['name'] or '').lower() != 'msmdsrv.exe':
                    continue
                for conn in proc.net_connections(kind='tcp'):
                    if conn.status == psutil.CONN_LISTEN and conn.laddr.ip in ('127.0.0.1', '0.0.0.0', '::1', '::'):
                        instances.append({
                            'port': conn.laddr.port,
                            'pid': proc.info['pid'],
                            'source': 'process',
                        })
                        break
            except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
                continue
        return instances

    # ==================== XMLA ====================

    def _post(self, port: int, action: str, body: str) -> str:
        headers = {
            'Content-Type': 'text/xml; charset=utf-8',
            'SOAPAction': f'"{XMLA_NAMESPACE}:{action}"',
        }
        envelope = SOAP_ENVELOPE.format(body=body)
        last_error: Optional[Exception] = None

        # Some builds only answer on the bare port, others on /xmla
        for url in (f"http://localhost:{port}/xmla", f"http://localhost:{port}"):
            try:
                response = self._session.post(url, data=envelope.encode('utf-8'), headers=headers, timeout=self.timeout)
            except requests.RequestException as e:
                last_error = e
                continue
            if response.status_code < 400:
                return response.text
            last_error = UpstreamFailure(
                f"XMLA endpoint on port {port} returned {response.status_code}",
                status_code=response.status_code,
            )

        raise UpstreamFailure(f"Could not reach Power BI Desktop on port {port}: {last_error}")

    def discover(self, port: int, request_type: str, database: Optional[str] = None) -> List[Dict[str, str]]:
        """Run an XMLA Discover request and return its rows"""
        restrictions = f"<DatabaseName>{escape(database)}</DatabaseName>" if database else ""
        properties = f"<Catalog>{escape(database)}</Catalog>" if database else ""
        body = (
            f'<Discover xmlns="{XMLA_NAMESPACE}">'
            f'<RequestType>{request_type}</RequestType>'
            f'<Restrictions><RestrictionList>{restrictions}</RestrictionList></Restrictions>'
            f'<Properties><PropertyList>{properties}</PropertyList></Properties>'
            f'</Discover>'
        )
        return parse_rows(self._post(port, 'Discover', body))

    def list_databases(self, port: int) -> List[str]:
        return [row['CATALOG_NAME'] for row in self.discover(port, 'DBSCHEMA_CATALOGS') if row.get('CATALOG_NAME')]

    def list_tables(self, port: int, database: str) -> List[str]:
        return [row['Name'] for row in self.discover(port, 'TMSCHEMA_TABLES', database) if row.get('Name')]

    def get_schema(self, port: int, database: str) -> Dict[str, Any]:
        """Tables, columns and measures of a local model"""
        tables = self.discover(port, 'TMSCHEMA_TABLES', database)
        table_names = {row.get('ID'): row.get('Name') for row in tables}

        columns = []
        for row in self.discover(port, 'TMSCHEMA_COLUMNS', database):
            name = row.get('ExplicitName') or row.get('InferredName') or row.get('Name')
            # RowNumber columns are engine internals
            if not name or name.startswith('RowNumber-'):
                continue
            columns.append({'table': table_names.get(row.get('TableID')), 'name': name})

        measures = [
            {
                'table': table_names.get(row.get('TableID')),
                'name': row.get('Name'),
                'expression': row.get('Expression'),
            }
            for row in self.discover(port, 'TMSCHEMA_MEASURES', database)
        ]

        return {
            'tables': [row.get('Name') for row in tables if row.get('Name')],
            'columns': columns,
            'measures': measures,
        }

    def execute_dax(self, port: int, database: str, query: str) -> List[Dict[str, str]]:
        """Execute a DAX query against a local model"""
        body = (
            f'<Execute xmlns="{XMLA_NAMESPACE}">'
            f'<Command><Statement>{escape(query)}</Statement></Command>'
            f'<Properties><PropertyList>'
            f'<Catalog>{escape(database)}</Catalog><Format>Tabular</Format><Content>SchemaData</Content>'
            f'</PropertyList></Properties>'
            f'</Execute>'
        )
        return parse_rows(self._post(port, 'Execute', body))
