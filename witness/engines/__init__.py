"""Domain engines: schema registry, evidence, records, audit and quota."""
