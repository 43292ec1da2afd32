"""Click subcommands for the ralph CLI."""
