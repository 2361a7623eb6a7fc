"""
Self-organizing code library graph.

Submissions are decomposed top-down (organism → sub-organisms → molecules →
atoms), every piece is resolved against the existing library (reuse, create
or link), and families are kept coherent by bounded split / merge / absorb /
prune passes.
"""
