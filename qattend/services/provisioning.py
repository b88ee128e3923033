"""One-time creation of the face tables, attendance uniqueness and RLS policies."""
from dataclasses import dataclass, field
from typing import List, Tuple

from sqlalchemy.dialects import postgresql
from sqlalchemy.schema import CreateIndex, CreateTable

from qattend import models
from qattend.errors import QAttendError, WriteError
from qattend.services.store import AttendanceStore
from qattend.utils.logger import logger

# Tables created before similarity_threshold became nullable carry a 0.450 default.
PROFILE_THRESHOLD_SQL = "ALTER TABLE public.face_profiles ALTER COLUMN similarity_threshold DROP DEFAULT;"

RLS_SQL = """
ALTER TABLE public.face_profiles ENABLE ROW LEVEL SECURITY;
ALTER TABLE public.face_profile_embeddings ENABLE ROW LEVEL SECURITY;

DROP POLICY IF EXISTS "Users can manage their own face profile" ON public.face_profiles;
CREATE POLICY "Users can manage their own face profile" ON public.face_profiles
    FOR ALL USING (auth.uid() = user_id);

DROP POLICY IF EXISTS "Users can manage their own face embeddings" ON public.face_profile_embeddings;
CREATE POLICY "Users can manage their own face embeddings" ON public.face_profile_embeddings
    FOR ALL USING (
        face_profile_id IN (SELECT id FROM public.face_profiles WHERE user_id = auth.uid())
    );
"""


@dataclass
class SetupReport:
    tables: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _compile(element) -> str:
    return str(element.compile(dialect=postgresql.dialect())).strip() + ";"


def table_ddl(model) -> str:
    table = model.__table__
    statements = [_compile(CreateTable(table, if_not_exists=True))]
    statements += [_compile(CreateIndex(index, if_not_exists=True)) for index in table.indexes]
    return "\n".join(statements)


def setup_steps() -> List[Tuple[str, str, bool]]:
    """(name, sql, required) in execution order."""
    attendance_indexes = "\n".join(
        _compile(CreateIndex(index, if_not_exists=True))
        for index in models.AttendanceRecord.__table__.indexes
    )
    return [
        (models.FaceProfile.__tablename__,
         table_ddl(models.FaceProfile) + "\n" + PROFILE_THRESHOLD_SQL, True),
        (models.FaceProfileEmbedding.__tablename__, table_ddl(models.FaceProfileEmbedding), False),
        ("attendance uniqueness", attendance_indexes, False),
        ("row level security", RLS_SQL, False),
    ]


def setup_face_tables(store: AttendanceStore) -> SetupReport:
    """
    Create everything the face/attendance flow needs. Safe to re-run.

    Failing to create ``face_profiles`` aborts with WriteError; later steps
    are logged and reported as warnings.
    """
    report = SetupReport()
    logger.info("🚀 Creating face recognition tables...")

    for name, sql, required in setup_steps():
        try:
            store.execute_sql(sql)
        except QAttendError as e:
            logger.error(f"Error during setup step '{name}': {e.message}")
            if required:
                raise WriteError(f"Failed to create {name} table") from e
            report.warnings.append(f"{name}: {e.message}")
            continue
        if name in (models.FaceProfile.__tablename__, models.FaceProfileEmbedding.__tablename__):
            report.tables.append(name)

    logger.info("✅ Face recognition tables created")
    return report
