#!/usr/bin/env python3
"""
Create database tables for the diagnosis core and seed the symptom ontology.
This script creates tables without dropping existing ones.
"""

from coffee_diagnosis.database import Base, engine, init_db
from coffee_diagnosis.services.symptom_ontology import SymptomOntology

print("Creating database tables...")

try:
    init_db(bind=engine)
    print("✅ Database tables created successfully!")
    print()
    print("The following tables are now available:")
    for table_name in Base.metadata.tables.keys():
        print(f"  - {table_name}")

    seeded = SymptomOntology().seed_defaults()
    if seeded:
        print(f"✅ Seeded {seeded} default symptoms")
    else:
        print("Symptom catalog already populated, skipping seed")
except Exception as e:
    print(f"❌ Error creating tables: {e}")
    raise
