"""
Data Source Service — pulls records for scheduled jobs.

Adapters (API, SQL, FILE, MONGODB) are plain callables registered per `dataSource.type`. Blocking
adapters run on a worker thread; every call is raced against a timer.
"""
import asyncio
import csv
import json
import logging
import os
import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Optional

import requests
from pymongo import MongoClient
from pymongo.errors import PyMongoError
from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from gateway.config import DATA_SOURCE_TIMEOUT_SECONDS
from gateway.errors import DataSourceError, ExecutionTimeoutError, ValidationError

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

TEST_TIMEOUT_SECONDS = 30
TEST_SAMPLE_RECORDS = 10
TEST_MAX_CHARS = 100000


# ============================================================================
# Variable substitution
# ============================================================================

def build_context(org_id: int, integration_id: Any = None, integration_name: Optional[str] = None) -> Dict[str, Any]:
    return {"config": {"orgId": org_id, "integrationId": integration_id, "integrationName": integration_name}}


def _date_helper(name: str, now: datetime) -> Optional[Any]:
    if name == "today()":
        return now.date().isoformat()
    if name == "yesterday()":
        return (now - timedelta(days=1)).date().isoformat()
    if name == "todayStart()":
        return now.replace(hour=0, minute=0, second=0, microsecond=0).isoformat()
    if name == "todayEnd()":
        return now.replace(hour=23, minute=59, second=59, microsecond=999000).isoformat()
    if name == "now()":
        return now.isoformat()
    if name == "timestamp()":
        return int(now.timestamp() * 1000)
    return None


def _variable_value(variable: str, context: Dict[str, Any], now: datetime) -> Optional[Any]:
    if variable.startswith("config."):
        return (context.get("config") or {}).get(variable[len("config."):])
    if variable.startswith("date."):
        return _date_helper(variable[len("date."):], now)
    if variable.startswith("env."):
        return os.environ.get(variable[len("env."):])
    return None


def replace_variables(value: Any, context: Dict[str, Any], now: Optional[datetime] = None) -> Any:
    """
    Substitute {{config.*}}, {{date.*()}} and {{env.*}} placeholders.
    Walks dicts and lists; unknown placeholders are left untouched.
    """
    now = now or datetime.now(timezone.utc)
    if isinstance(value, dict):
        return {k: replace_variables(v, context, now) for k, v in value.items()}
    if isinstance(value, list):
        return [replace_variables(v, context, now) for v in value]
    if not isinstance(value, str):
        return value

    def substitute(match):
        resolved = _variable_value(match.group(1).strip(), context, now)
        return match.group(0) if resolved is None else str(resolved)

    return VARIABLE_PATTERN.sub(substitute, value)


# ============================================================================
# Adapters
# ============================================================================

def fetch_api(config: Dict[str, Any], context: Dict[str, Any]) -> Any:
    url = replace_variables(config.get("url"), context)
    if not url:
        raise ValidationError("API data source requires a url")
    method = (config.get("method") or "GET").upper()
    headers = replace_variables(config.get("headers") or {}, context)
    body = None
    if config.get("body") is not None and method in ("POST", "PUT", "PATCH"):
        body = replace_variables(config["body"], context)

    logger.info(f"[EXECUTOR] API {method} {url} (org={context['config'].get('orgId')})")
    try:
        resp = requests.request(method, url, headers=headers, json=body,
                                timeout=config.get("timeoutSeconds") or DATA_SOURCE_TIMEOUT_SECONDS)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise DataSourceError(f"API call failed: {e}")
    try:
        return resp.json()
    except ValueError:
        return resp.text


def fetch_sql(config: Dict[str, Any], context: Dict[str, Any]) -> Any:
    url = replace_variables(config.get("connectionString"), context)
    query = replace_variables(config.get("query"), context)
    if not url or not query:
        raise ValidationError("SQL data source requires connectionString and query")

    logger.info(f"[EXECUTOR] SQL query (org={context['config'].get('orgId')})")
    engine = create_engine(url)
    try:
        statement = text(query)
        params = {k: v for k, v in {"orgId": context["config"].get("orgId")}.items()
                  if f":{k}" in query}
        with engine.connect() as conn:
            result = conn.execute(statement, params)
            return [dict(row._mapping) for row in result]
    except SQLAlchemyError as e:
        raise DataSourceError(f"SQL query failed: {e}")
    finally:
        engine.dispose()


def fetch_file(config: Dict[str, Any], context: Dict[str, Any]) -> Any:
    path = replace_variables(config.get("path"), context)
    if not path:
        raise ValidationError("FILE data source requires a path")
    fmt = (config.get("format") or os.path.splitext(path)[1].lstrip(".") or "json").lower()

    logger.info(f"[EXECUTOR] FILE {path} ({fmt})")
    try:
        with open(path, newline="", encoding="utf-8") as f:
            if fmt == "csv":
                return list(csv.DictReader(f))
            if fmt == "json":
                return json.load(f)
    except (OSError, ValueError) as e:
        raise DataSourceError(f"Failed to read {path}: {e}")
    raise ValidationError(f"Unsupported file format '{fmt}'")


def fetch_mongodb(config: Dict[str, Any], context: Dict[str, Any]) -> Any:
    url = replace_variables(config.get("connectionString"), context)
    collection = config.get("collection")
    pipeline = config.get("pipeline")
    if not url or not collection or not isinstance(pipeline, list):
        raise ValidationError("MONGODB data source requires connectionString, collection and a pipeline array")
    database = config.get("database") or "test"
    pipeline = replace_variables(pipeline, context)

    logger.info(f"[EXECUTOR] MONGODB aggregate {database}.{collection} "
                f"({len(pipeline)} stages, org={context['config'].get('orgId')})")
    client = MongoClient(url, serverSelectionTimeoutMS=5000, socketTimeoutMS=30000)
    try:
        return [_plain_document(doc) for doc in client[database][collection].aggregate(pipeline)]
    except PyMongoError as e:
        raise DataSourceError(f"MongoDB query failed: {e}")
    finally:
        client.close()


def _plain_document(doc: Dict[str, Any]) -> Dict[str, Any]:
    if "_id" in doc:
        return {**doc, "_id": str(doc["_id"])}
    return doc


DATA_SOURCE_ADAPTERS: Dict[str, Callable[[Dict[str, Any], Dict[str, Any]], Any]] = {
    "API": fetch_api,
    "SQL": fetch_sql,
    "FILE": fetch_file,
    "MONGODB": fetch_mongodb,
}


def count_records(data: Any) -> int:
    if data is None:
        return 0
    if isinstance(data, list):
        return len(data)
    return 1


# ============================================================================
# Executor
# ============================================================================

class DataSourceService:
    @staticmethod
    def get_adapter(source_type: Optional[str]):
        adapter = DATA_SOURCE_ADAPTERS.get((source_type or "").upper())
        if adapter is None:
            raise ValidationError(
                f"Unsupported data source type: {source_type}",
                details={"supported": sorted(DATA_SOURCE_ADAPTERS)},
            )
        return adapter

    @staticmethod
    async def execute_data_source(
        config: Dict[str, Any],
        context: Dict[str, Any],
        timeout: Optional[float] = None,
    ) -> Any:
        """Run the adapter for config['type'], failing with ExecutionTimeoutError past the bound."""
        adapter = DataSourceService.get_adapter((config or {}).get("type"))
        timeout = timeout or DATA_SOURCE_TIMEOUT_SECONDS

        if asyncio.iscoroutinefunction(adapter):
            call = adapter(config, context)
        else:
            call = asyncio.to_thread(adapter, config, context)
        task = asyncio.ensure_future(call)

        done, _ = await asyncio.wait({task}, timeout=timeout)
        if not done:
            # A thread-backed adapter keeps running until its own I/O returns
            task.cancel()
            logger.warning(f"[EXECUTOR] {config.get('type')} data source timed out after {timeout}s")
            raise ExecutionTimeoutError(
                f"Data source execution timed out after {timeout} seconds",
                details={"type": config.get("type"), "timeoutSeconds": timeout},
            )
        return task.result()

    @staticmethod
    async def test_data_source(config: Dict[str, Any], org_id: int) -> Dict[str, Any]:
        """Execute a data source once and return a size-capped sample."""
        if not config or not config.get("type"):
            raise ValidationError("Data source configuration is required")

        context = build_context(org_id, "test", "Test Data Source")
        result = await DataSourceService.execute_data_source(config, context, TEST_TIMEOUT_SECONDS)

        sample = result
        limited = False
        if isinstance(result, list) and len(result) > TEST_SAMPLE_RECORDS:
            sample = result[:TEST_SAMPLE_RECORDS]
            limited = True

        rendered = json.dumps(sample, default=str)
        if len(rendered) > TEST_MAX_CHARS:
            sample = {"message": "Data too large to display", "size": len(rendered)}
            limited = True

        return {
            "success": True,
            "message": "Data source connected successfully",
            "recordsFetched": count_records(result),
            "sampleData": sample,
            "limitedRecords": limited,
        }
