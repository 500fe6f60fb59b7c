"""
Run storage
===========
MySQL persistence for finished runs and their vulnerabilities. Optional: the
CLI only touches the database when asked to (--save, runs).

Connection settings come from DB_HOST, DB_PORT, DB_USER, DB_PASSWORD and
DB_NAME.
"""

import json
import logging
import os

import mysql.connector
from mysql.connector import Error
from dotenv import load_dotenv

from ..errors import RoleProbeError

load_dotenv()

logger = logging.getLogger("roleprobe.db")

SCHEMA = (
    """CREATE TABLE IF NOT EXISTS runs (
        id INT AUTO_INCREMENT PRIMARY KEY,
        base_url VARCHAR(512) NOT NULL,
        status VARCHAR(32) NOT NULL,
        posture VARCHAR(32),
        overall_score INT,
        compliance_score FLOAT,
        vuln_count INT DEFAULT 0,
        duration_ms INT DEFAULT 0,
        report LONGTEXT,
        start_time TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
        end_time TIMESTAMP NULL
    )""",
    """CREATE TABLE IF NOT EXISTS findings (
        id INT AUTO_INCREMENT PRIMARY KEY,
        run_id INT NOT NULL,
        vuln_id VARCHAR(255) NOT NULL,
        type VARCHAR(128) NOT NULL,
        severity VARCHAR(16) NOT NULL,
        source VARCHAR(16) NOT NULL,
        description TEXT,
        affected_roles TEXT,
        affected_resources TEXT,
        cvss_score FLOAT,
        remediation TEXT,
        FOREIGN KEY (run_id) REFERENCES runs(id)
    )""",
)

SEVERITY_ORDER = "FIELD(severity, 'critical', 'high', 'medium', 'low')"


class DatabaseError(RoleProbeError):
    pass


class Database:
    """MySQL database wrapper"""

    def __init__(self):
        self.host = os.getenv("DB_HOST", "localhost")
        self.port = int(os.getenv("DB_PORT", 3306))
        self.user = os.getenv("DB_USER")
        self.password = os.getenv("DB_PASSWORD")
        self.database = os.getenv("DB_NAME")
        self.connection = None

    def connect(self):
        try:
            self.connection = mysql.connector.connect(
                host=self.host,
                port=self.port,
                user=self.user,
                password=self.password,
                database=self.database
            )
            return self.connection
        except Error as e:
            raise DatabaseError(f"Database connection failed: {e}")

    def close(self):
        if self.connection and self.connection.is_connected():
            self.connection.close()

    def execute(self, query, params=None):
        cursor = self.connection.cursor(dictionary=True)
        cursor.execute(query, params or ())
        return cursor

    def fetch_all(self, query, params=None):
        cursor = self.execute(query, params)
        results = cursor.fetchall()
        cursor.close()
        return results

    def fetch_one(self, query, params=None):
        cursor = self.execute(query, params)
        result = cursor.fetchone()
        cursor.close()
        return result

    def insert(self, query, params=None):
        """Execute insert and return last insert id"""
        cursor = self.execute(query, params)
        self.connection.commit()
        last_id = cursor.lastrowid
        cursor.close()
        return last_id

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class RunStore:
    """
    Usage:
        with RunStore() as store:
            run_id = store.save(report)
            for row in store.recent():
                print(row["id"], row["posture"])
    """

    def __init__(self, db: Database = None):
        self.db = db or Database()

    def __enter__(self):
        self.db.connect()
        self.ensure_schema()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.db.close()

    def ensure_schema(self):
        for statement in SCHEMA:
            self.db.execute(statement).close()
        self.db.connection.commit()

    def save(self, report) -> int:
        summary = report.intelligence.executive_summary
        vulnerabilities = report.vulnerabilities
        run_id = self.db.insert(
            """INSERT INTO runs (base_url, status, posture, overall_score, compliance_score,
                                 vuln_count, duration_ms, report, end_time)
               VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NOW())""",
            (
                report.base_url,
                "completed",
                summary.security_posture,
                summary.overall_score,
                report.rbac.compliance_score if report.rbac else summary.hierarchy_compliance,
                len(vulnerabilities),
                sum(report.phase_timings.values()),
                json.dumps(report.to_dict(), default=str),
            ),
        )
        for vuln in vulnerabilities:
            self.db.insert(
                """INSERT INTO findings (run_id, vuln_id, type, severity, source, description,
                                         affected_roles, affected_resources, cvss_score, remediation)
                   VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)""",
                (
                    run_id,
                    vuln.vuln_id,
                    vuln.type,
                    vuln.severity.value,
                    vuln.source,
                    vuln.description,
                    json.dumps(list(vuln.affected_roles)),
                    json.dumps(list(vuln.affected_resources)),
                    vuln.cvss_score,
                    vuln.remediation,
                ),
            )
        logger.info(f"Stored run #{run_id} with {len(vulnerabilities)} finding(s)")
        return run_id

    def recent(self, limit: int = 15):
        return self.db.fetch_all(
            """SELECT id, base_url, status, posture, overall_score, compliance_score, vuln_count,
                      duration_ms, start_time
               FROM runs ORDER BY id DESC LIMIT %s""",
            (limit,),
        )

    def findings(self, run_id: int):
        rows = self.db.fetch_all(
            f"SELECT * FROM findings WHERE run_id = %s ORDER BY {SEVERITY_ORDER}",
            (run_id,),
        )
        for row in rows:
            for key in ("affected_roles", "affected_resources"):
                row[key] = json.loads(row[key]) if row.get(key) else []
        return rows

    def report(self, run_id: int):
        row = self.db.fetch_one("SELECT report FROM runs WHERE id = %s", (run_id,))
        if not row or not row["report"]:
            return None
        return json.loads(row["report"])
