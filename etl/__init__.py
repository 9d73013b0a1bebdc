# WORKFLOW: ETL package for converting the ORCID public data file.
# Used by: CLI (convert, extract), tests
# Modules include:
# 1. archive.py - Forward-only entry stream over tar/zip containers, directories and single files
# 2. validators.py - ORCID iD checksum and partial date validation
# 3. record_parser.py - Map one XML summary to a PersonRecord
# 4. formatters.py - debug-json, ndjson and bulk-rows output
# 5. pipeline.py - Sequential conversion with per-entry fault isolation
# 6. sharding.py - Parallel conversion of entries exposed as files
# 7. extract.py - Distinct disambiguated organization ids
#
# ETL flow: Archive -> Entries -> PersonRecord -> Affiliation resolution -> Output rows -> COPY

"""
ETL package for the ORCID public data file.
"""
