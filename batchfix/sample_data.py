import logging
import random

from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from batchfix.db_models import SampleRecord
from batchfix.zip_county import load_zip_county_map


logger = logging.getLogger(__name__)

TEST_KEY_PREFIX = "testkey_"


def generate_sample_data(session_factory: sessionmaker[Session], count: int, *, seed: int | None = None) -> int:
    rng = random.Random(seed)
    zip_table = load_zip_county_map()
    zip_codes = sorted(zip_table)

    with session_factory() as db:
        for index in range(count):
            zip_code = rng.choice(zip_codes)
            db.add(
                SampleRecord(
                    key_field=f"{TEST_KEY_PREFIX}{index + 1}",
                    field1=f"value_{rng.randint(1000, 9999)}",
                    field2=f"data_{rng.randint(100, 999)}",
                    condition="t" if rng.random() < 0.8 else "f",
                    county=zip_table[zip_code].fips_code,
                    zip_code=f"{zip_code}-{rng.randint(0, 9999):04d}",
                )
            )
        db.commit()

    logger.info("test data generated", extra={"records": count})
    return count


def clean_sample_data(session_factory: sessionmaker[Session]) -> int:
    with session_factory() as db:
        result = db.execute(delete(SampleRecord).where(SampleRecord.key_field.like(f"{TEST_KEY_PREFIX}%")))
        db.commit()
    logger.info("test data cleaned", extra={"records": result.rowcount})
    return result.rowcount
