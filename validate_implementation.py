#!/usr/bin/env python3
"""
Quick validation of ward aggregation against the configured datasets.
Checks that every tree and point school lands in at most one ward, that the
per-ward counts add up, and prints a ward-by-ward table.
"""

import sys

import numpy as np
import pandas as pd

from config import DATASET_FILES
from datasets import load_schools, load_trees, load_wards
from elevation import load_elevation
from errors import DataLoadError, InvalidGeometryError
from geometry_index import GeometryIndex
from ward_aggregator import WardAggregator

print("="*80)
print("WARD AGGREGATION VALIDATION")
print("="*80)

try:
    wards = load_wards(DATASET_FILES['wards'])
    trees = load_trees(DATASET_FILES['trees'])
    schools = load_schools(DATASET_FILES['schools'])
except (DataLoadError, InvalidGeometryError) as e:
    print(f"\nERROR: {e}")
    sys.exit(1)

try:
    elevation = load_elevation(DATASET_FILES['elevation'])
except DataLoadError as e:
    print(f"NOTE: elevation unavailable, means will be blank ({e})")
    elevation = None

aggregator = WardAggregator(wards)
stats = aggregator.summarize_all(trees, schools, elevation)

# Independent check: how many wards cover each tree (boundary inclusive)
tree_index = GeometryIndex(trees)
covering = np.zeros(len(trees), dtype=np.int64)
for ward in wards:
    covering[tree_index.covered_by(ward.geometry)] += 1

on_shared_edges = int((covering > 1).sum())
outside = int((covering == 0).sum())
assigned = int(stats['trees'].sum())

print("\n" + "="*80)
print("WARD-BY-WARD SUMMARY")
print("="*80)
print(f"{'Ward':<40} {'Trees':<8} {'Types':<7} {'Schools':<9} {'Elevation':<10}")
print("-"*80)
for row in stats.itertuples(index=False):
    elevation_text = f"{row.elevation_mean:.2f}" if pd.notna(row.elevation_mean) else "n/a"
    print(f"{row.ward[:39]:<40} {row.trees:<8} {row.tree_types:<7} {row.schools:<9} {elevation_text:<10}")
print("-"*80)
print(f"{'TOTAL':<40} {assigned:<8} {'':<7} {int(stats['schools'].sum()):<9}")

print("\n" + "="*80)
print("SUMMARY")
print("="*80)
print(f"Wards: {len(wards):,}")
print(f"Trees: {len(trees):,}")
print(f"Trees assigned to a ward: {assigned:,}")
print(f"Trees outside every ward: {outside:,}")
print(f"Trees on a shared ward edge (counted once): {on_shared_edges:,}")

print("\n" + "="*80)
print("VALIDATION RESULT")
print("="*80)

if assigned + outside == len(trees):
    print("✅ PERFECT MATCH - every tree is counted in exactly one ward or none")
else:
    print(f"⚠️  MISMATCH - {assigned + outside - len(trees):+,} trees double counted or lost")
    sys.exit(1)
print("="*80)
