"""Plan read models."""

from plan_ledger.queries.overview import OverviewQuery, build_overview, rank_contributions

__all__ = ["OverviewQuery", "build_overview", "rank_contributions"]
