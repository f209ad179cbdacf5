"""TrustWork — gig lifecycle core for a two-sided jobs and gigs marketplace."""

__version__ = "0.1.0"
