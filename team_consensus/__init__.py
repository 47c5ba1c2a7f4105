"""Team Consensus: votes, reviews, phase planning and handoffs for small teams."""

__version__ = "1.0.0"
