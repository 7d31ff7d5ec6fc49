"""Daily contribution counts per sampled user."""

from sqlalchemy import BigInteger, Column, Date, ForeignKey, Integer, UniqueConstraint
from sqlalchemy.orm import relationship

from devpanel.config.database import Base, BigIntId


class UserContributionDaily(Base):
    """Non-zero contribution-calendar day for one user; absent days mean zero."""

    __tablename__ = "user_contribution_daily"

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    date = Column(Date, nullable=False, index=True)
    user_id = Column(
        BigInteger().with_variant(Integer, "sqlite"),
        ForeignKey("sampled_users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    contribution_count = Column(Integer, nullable=False)

    user = relationship("SampledUser", back_populates="contributions")

    __table_args__ = (
        UniqueConstraint("date", "user_id", name="uk_user_contribution_daily"),
    )

    def __repr__(self):
        return f"<UserContributionDaily {self.user_id}:{self.date}={self.contribution_count}>"
