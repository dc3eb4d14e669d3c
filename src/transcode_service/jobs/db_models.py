from sqlalchemy import BigInteger, CheckConstraint, Column, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

JOB_STATES = ("waiting", "progressing", "completed", "failed")


class TranscodingJob(Base):
    __tablename__ = "transcoding_jobs"
    __table_args__ = (
        CheckConstraint(
            "job_state IN ('waiting', 'progressing', 'completed', 'failed')",
            name="ck_transcoding_jobs_state",
        ),
    )

    job_id = Column(String, primary_key=True)
    job_state = Column(String, nullable=False, default="waiting")
    input_locator = Column(String, nullable=False)
    output_locator = Column(String)
    target_quality = Column(String, nullable=False)
    submit_timestamp = Column(BigInteger, nullable=False)
    callback_data = Column(Text, nullable=True)  # JSON callback payload, NULL until terminal
