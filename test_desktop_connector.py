"""Test Power BI Desktop connector parsing and the local tool"""
import asyncio

import pytest

from powerbi_desktop_connector import PowerBIDesktopConnector, decode_xml_name, parse_rows
from powerbi_errors import UpstreamFailure
from powerbi_tools import ToolContext
from powerbi_tools.local import LocalPbiOperationsHandler

ROWSET = """<?xml version="1.0" encoding="utf-8"?>
<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <ExecuteResponse xmlns="urn:schemas-microsoft-com:xml-analysis">
      <return>
        <root xmlns="urn:schemas-microsoft-com:xml-analysis:rowset">
          <row><Sales_x005B_Region_x005D_>North</Sales_x005B_Region_x005D_><_x005B_Total_x005D_>120</_x005B_Total_x005D_></row>
          <row><Sales_x005B_Region_x005D_>South</Sales_x005B_Region_x005D_><_x005B_Total_x005D_/></row>
        </root>
      </return>
    </ExecuteResponse>
  </soap:Body>
</soap:Envelope>"""

FAULT = """<soap:Envelope xmlns:soap="http://schemas.xmlsoap.org/soap/envelope/">
  <soap:Body>
    <soap:Fault>
      <faultstring>XML for Analysis parser error</faultstring>
      <detail><Error ErrorCode="3238002695" Description="The syntax for 'EVALUTE' is incorrect."/></detail>
    </soap:Fault>
  </soap:Body>
</soap:Envelope>"""


def test_decode_xml_name():
    assert decode_xml_name("_x005B_Sales_x005D_") == "[Sales]"
    assert decode_xml_name("Plain") == "Plain"
    assert decode_xml_name("Order_x0020_Date") == "Order Date"


def test_parse_rows():
    rows = parse_rows(ROWSET)
    assert rows == [
        {"Sales[Region]": "North", "[Total]": "120"},
        {"Sales[Region]": "South", "[Total]": ""},
    ]


def test_parse_rows_raises_on_fault():
    with pytest.raises(UpstreamFailure, match="EVALUTE"):
        parse_rows(FAULT)


def test_parse_rows_raises_on_garbage():
    with pytest.raises(UpstreamFailure, match="Invalid XMLA response"):
        parse_rows("<not closed")


def test_workspaces_dir(monkeypatch):
    monkeypatch.delenv("LOCALAPPDATA", raising=False)
    assert PowerBIDesktopConnector.workspaces_dir() is None

    monkeypatch.setenv("LOCALAPPDATA", "/users/ana/AppData/Local")
    assert PowerBIDesktopConnector.workspaces_dir().name == "AnalysisServicesWorkspaces"


class FakeDesktop:
    def __init__(self, instances=None, databases=None):
        self.instances = instances if instances is not None else [{"port": 51234, "source": "port_file"}]
        self.databases = databases if databases is not None else ["a1b2c3"]
        self.queries = []

    def discover_instances(self):
        return self.instances

    def list_databases(self, port):
        return self.databases

    def list_tables(self, port, database):
        return ["Sales", "Date"]

    def get_schema(self, port, database):
        return {"tables": [{"name": "Sales"}]}

    def execute_dax(self, port, database, query):
        self.queries.append((port, database, query))
        return [{"[Total]": "42"}]


def run_local(args, desktop):
    return asyncio.run(LocalPbiOperationsHandler().execute(args, ToolContext(desktop=desktop)))


def test_local_detect_without_desktop():
    result = run_local({"operation": "detect"}, FakeDesktop(instances=[]))
    assert result["found"] is False


def test_local_detect_lists_databases():
    result = run_local({"operation": "detect"}, FakeDesktop())
    assert result["instanceCount"] == 1
    assert result["instances"][0]["connectionString"] == "localhost:51234"
    assert result["instances"][0]["databases"] == ["a1b2c3"]


def test_local_execute_dax_resolves_port_and_database():
    desktop = FakeDesktop()
    result = run_local({"operation": "execute_dax", "query": "EVALUATE Sales"}, desktop)
    assert desktop.queries == [(51234, "a1b2c3", "EVALUATE Sales")]
    assert result["rowCount"] == 1


def test_local_list_tables_with_several_models():
    result = run_local({"operation": "list_tables"}, FakeDesktop(databases=["one", "two"]))
    assert result["databases"] == ["one", "two"]
    assert "tables" not in result


def test_local_schema_without_desktop():
    with pytest.raises(UpstreamFailure, match="not running"):
        run_local({"operation": "get_schema"}, FakeDesktop(instances=[]))
