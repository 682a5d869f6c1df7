"""
Cohort store backed by a DuckDB CDM database.

Cohorts are instantiated from parameterized SQL templates. Templates refer to
schema and table names through ``@name`` placeholders:

    @cdm_database_schema      CDM tables (person, observation_period, ...)
    @target_database_schema   schema of the cohort table
    @target_cohort_table      cohort table name
    @target_cohort_id         cohort_definition_id to insert
"""

import logging
import re
from pathlib import Path
from typing import Protocol

import duckdb
import pandas as pd

from rcri_study.config.schema import CohortDefinition, CustomCovariate, DatabaseConfig
from rcri_study.config.settings import sql_template_path
from rcri_study.data.schema import COHORT_END_COL, COHORT_ID_COL, COHORT_START_COL, SUBJECT_ID_COL
from rcri_study.errors import ConfigurationError, ExtractionError

logger = logging.getLogger(__name__)

CREATE_COHORT_TABLE_SQL = "CreateCohortTable"

_PARAMETER = re.compile(r"@(\w+)")


def render_sql(sql: str, **parameters) -> str:
    """
    Substitute ``@name`` placeholders.

    Raises:
        ConfigurationError: If the template uses a parameter that was not given
    """
    missing = sorted({m for m in _PARAMETER.findall(sql) if m not in parameters})
    if missing:
        raise ConfigurationError(f"SQL template parameters not provided: {missing}")
    return _PARAMETER.sub(lambda m: str(parameters[m.group(1)]), sql)


def read_sql_template(settings_dir: str | Path, name: str) -> str:
    path = sql_template_path(settings_dir, name)
    if not path.exists():
        raise ConfigurationError(f"SQL template not found: {path}")
    return path.read_text()


def connect_database(config: DatabaseConfig) -> duckdb.DuckDBPyConnection:
    """Open the CDM database and apply the thread setting."""
    try:
        con = duckdb.connect(database=str(config.database), read_only=config.read_only)
    except duckdb.Error as e:
        raise ExtractionError(f"Could not open database {config.database}: {e}") from e
    con.execute(f"PRAGMA threads={config.threads};")
    return con


class CohortStore(Protocol):
    def create_cohort_table(self) -> None: ...

    def materialize_cohort(self, cohort_id: int, name: str) -> int: ...

    def read_cohort(self, cohort_id: int) -> pd.DataFrame: ...


class DuckDBCohortStore:
    """
    Create and read cohorts in a DuckDB cohort table.

    Args:
        connection: Open DuckDB connection holding the CDM schema
        database: Schema and table names
        settings_dir: Directory with the sql/ templates
    """

    def __init__(
        self,
        connection: duckdb.DuckDBPyConnection,
        database: DatabaseConfig,
        settings_dir: str | Path,
    ):
        self.connection = connection
        self.database = database
        self.settings_dir = Path(settings_dir)

    @classmethod
    def connect(cls, database: DatabaseConfig, settings_dir: str | Path) -> "DuckDBCohortStore":
        return cls(connect_database(database), database, settings_dir)

    def close(self):
        self.connection.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    @property
    def cohort_table(self) -> str:
        return f"{self.database.cohort_database_schema}.{self.database.cohort_table}"

    def _parameters(self, cohort_id: int | None = None) -> dict:
        params = {
            "cdm_database_schema": self.database.cdm_database_schema,
            "target_database_schema": self.database.cohort_database_schema,
            "target_cohort_table": self.database.cohort_table,
        }
        if cohort_id is not None:
            params["target_cohort_id"] = int(cohort_id)
        return params

    def cursor(self) -> duckdb.DuckDBPyConnection:
        """A separate connection to the same database, for use from another thread."""
        return self.connection.cursor()

    def create_cohort_table(self) -> None:
        """(Re)create the empty cohort table."""
        sql = render_sql(
            read_sql_template(self.settings_dir, CREATE_COHORT_TABLE_SQL), **self._parameters()
        )
        try:
            self.connection.execute(sql)
        except duckdb.Error as e:
            raise ExtractionError(f"Could not create cohort table {self.cohort_table}: {e}") from e
        logger.info(f"Created cohort table {self.cohort_table}")

    def materialize_cohort(self, cohort_id: int, name: str) -> int:
        """
        Instantiate one cohort from sql/<name>.sql, replacing earlier rows.

        Returns:
            Number of cohort entries created

        Raises:
            ConfigurationError: If the template is missing or incomplete
            ExtractionError: If the SQL fails
        """
        sql = render_sql(read_sql_template(self.settings_dir, name), **self._parameters(cohort_id))
        try:
            self.connection.execute(
                f"DELETE FROM {self.cohort_table} WHERE {COHORT_ID_COL} = ?", [int(cohort_id)]
            )
            self.connection.execute(sql)
        except duckdb.Error as e:
            raise ExtractionError(f"Could not create cohort {cohort_id} ({name}): {e}") from e
        count = self.cohort_size(cohort_id)
        logger.info(f"Cohort {name} (id {cohort_id}): {count} entries")
        return count

    def materialize_cohorts(
        self,
        cohorts: tuple[CohortDefinition, ...],
        custom_covariates: tuple[CustomCovariate, ...] = (),
    ) -> dict[int, int]:
        """
        Create the cohort table, then every study cohort and covariate cohort.

        A cohort whose SQL fails is logged and left out of the counts; the
        remaining cohorts are still created.

        Returns:
            Entry count per cohort id
        """
        self.create_cohort_table()
        definitions = [(c.cohort_id, c.name) for c in cohorts]
        definitions += [(c.atlas_id, c.cohort_name) for c in custom_covariates]

        counts = {}
        for cohort_id, name in definitions:
            try:
                counts[cohort_id] = self.materialize_cohort(cohort_id, name)
            except ExtractionError as e:
                logger.error(f"cohort_id={cohort_id} step=create_cohort error={type(e).__name__}: {e}")
        if len(counts) < len(definitions):
            logger.warning(f"{len(definitions) - len(counts)} of {len(definitions)} cohorts failed")
        return counts

    def cohort_size(self, cohort_id: int) -> int:
        row = self.connection.execute(
            f"SELECT COUNT(*) FROM {self.cohort_table} WHERE {COHORT_ID_COL} = ?",
            [int(cohort_id)],
        ).fetchone()
        return int(row[0])

    def read_cohort(self, cohort_id: int) -> pd.DataFrame:
        """
        Raises:
            ExtractionError: If the cohort table cannot be read
        """
        try:
            return self.connection.execute(
                f"""
                SELECT {COHORT_ID_COL}, {SUBJECT_ID_COL}, {COHORT_START_COL}, {COHORT_END_COL}
                FROM {self.cohort_table}
                WHERE {COHORT_ID_COL} = ?
                ORDER BY {SUBJECT_ID_COL}, {COHORT_START_COL}
                """,
                [int(cohort_id)],
            ).df()
        except duckdb.Error as e:
            raise ExtractionError(f"Could not read cohort {cohort_id}: {e}") from e

    def cohort_counts(self) -> pd.DataFrame:
        """Entries and distinct subjects per cohort id."""
        return self.connection.execute(
            f"""
            SELECT {COHORT_ID_COL},
                   COUNT(*) AS cohort_entries,
                   COUNT(DISTINCT {SUBJECT_ID_COL}) AS cohort_subjects
            FROM {self.cohort_table}
            GROUP BY {COHORT_ID_COL}
            ORDER BY {COHORT_ID_COL}
            """
        ).df()
