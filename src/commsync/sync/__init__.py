"""Communications sync engine: event parsing, contact resolution, paging, upserts."""
