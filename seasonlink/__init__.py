"""SeasonLink: season-spanning identity resolution for fantasy players and teams."""

__version__ = "0.3.0"
