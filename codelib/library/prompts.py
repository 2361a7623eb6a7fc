"""
Oracle prompts: system prompts + user-prompt builders.

System prompts are module constants (one per oracle operation); user
prompts are built from typed inputs so every call site sends the same
layout. Output shape is enforced by the LLM output models, the JSON blocks
here only describe it to the model.
"""

from typing import Iterable, List, Optional

from codelib.schemas import FamilyRole, JudgeCandidate, Piece, SourceFile, Taxonomy


def _file_blocks(files: Iterable[SourceFile], signatures_only: int = 0) -> str:
    blocks = []
    for f in files:
        body = f.signature(signatures_only) if signatures_only else f.code
        blocks.append(f"--- {f.name} ---\n{body}")
    return "\n\n".join(blocks)


# ── Decomposition levels (shared by outline / children prompts) ─────────────

_LEVELS = """\
DEFINITIONS:
- ATOM: a single-file, single-responsibility unit. One function, one hook, \
one utility, one query. If it does ONE thing, it's an atom.
- MOLECULE: a multi-file unit that does ONE thing by combining atoms from the \
SAME domain. A search bar (input + button + search logic) is a molecule. \
Key test: does it serve a single purpose?
- SUB-ORGANISM: a nested unit that does MULTIPLE things by combining \
molecules from DIFFERENT domains, usually with its own state, API or \
lifecycle. Key test: does it cross domain boundaries?

For each piece:
- name: descriptive name derived from the code's purpose, not the filename
- description: 1-2 sentences about what this piece does
- files: which source files belong to it (exact filenames)
- is_demoable: can it be rendered as a standalone preview? (false for pure logic / backend)
- parent: the NAME of the piece it belongs to
"""


# ── Outline ─────────────────────────────────────────────────────────────────

OUTLINE_PROMPT = f"""\
You are a code library architect. Given the SIGNATURES (first lines) of every \
file of a submission, you classify the whole submission as ONE organism and \
list its DIRECT children only: sub-organisms and molecules. Do NOT list atoms; \
they are extracted later from each molecule's full code.

{_LEVELS}
ORGANISM CLASSIFICATION:
- kind: "snippet" (1 file, one function), "component" (UI unit) or \
"collection" (utilities / config / middleware set)
- type, domain, category: short labels; prefer the EXISTING vocabulary when it fits
- stack: "frontend" | "backend" | "fullstack"; language: primary language
- libraries: third-party packages actually imported; tags: 1-3 lowercase singular keywords
- useCases: 2-4 practical use cases; entryFile: main entry filename (exact match)

RULES:
- Every file should belong to at least one direct child.
- Children are subsets, NOT duplicates of the organism.

RESPOND with JSON:
{{
  "organism": {{"name", "description", "kind", "type", "domain", "stack", "language",
               "category", "libraries", "tags", "useCases", "entryFile", "is_demoable", "files"}},
  "sub_organisms": [{{"name", "description", "is_demoable", "files", "parent"}}],
  "molecules": [{{"name", "description", "is_demoable", "files", "parent"}}]
}}"""


def build_outline_prompt(files: List[SourceFile], taxonomy: Taxonomy, signature_lines: int = 30) -> str:
    vocab = []
    if taxonomy.types:
        vocab.append(f"EXISTING TYPES: {', '.join(taxonomy.types)}. Prefer these if they fit.")
    if taxonomy.domains:
        vocab.append(f"EXISTING DOMAINS: {', '.join(taxonomy.domains)}. Prefer these if they fit.")
    if taxonomy.tags:
        vocab.append(f"EXISTING TAGS: {', '.join(taxonomy.tags)}. Prefer these if they fit.")
    if taxonomy.categories:
        vocab.append(f"EXISTING CATEGORIES: {', '.join(taxonomy.categories)}. Prefer these if they fit.")

    return (
        f"FILE SIGNATURES ({len(files)} files, first {signature_lines} lines each):\n\n"
        f"{_file_blocks(files, signatures_only=signature_lines)}\n\n"
        + ("\n".join(vocab) + "\n\n" if vocab else "")
        + "Classify the organism and list its direct children."
    )


# ── Children of a sub-organism ──────────────────────────────────────────────

CHILDREN_PROMPT = f"""\
You are a code library architect. Given the FULL source files of one piece of \
a larger submission, you list its DIRECT children: nested sub-organisms and \
molecules. Do NOT list atoms.

{_LEVELS}
RULES:
- Every file should belong to at least one child.
- A sub-organism may contain further sub-organisms; only list the first level.
- Every child's parent is the piece named in the request.

RESPOND with JSON:
{{
  "sub_organisms": [{{"name", "description", "is_demoable", "files", "parent"}}],
  "molecules": [{{"name", "description", "is_demoable", "files", "parent"}}]
}}"""


def build_children_prompt(parent_name: str, parent_description: str, files: List[SourceFile]) -> str:
    return (
        f'PIECE: "{parent_name}"\n'
        f"Description: {parent_description or 'N/A'}\n\n"
        f"SOURCE FILES ({len(files)} files):\n\n{_file_blocks(files)}\n\n"
        f'List the direct sub-organisms and molecules of "{parent_name}".'
    )


# ── Atom extraction ─────────────────────────────────────────────────────────

ATOMS_PROMPT = """\
You are a code library curator. Given the FULL source of one molecule, you \
extract its ATOMS: single-responsibility units (one function, one hook, one \
utility, one query) worth storing on their own.

For each atom:
- name: descriptive name of what it does
- description: 1-2 sentences
- code: the atom's own code, copied from the source (self-contained where possible)
- is_demoable: can it be rendered as a standalone preview?

RULES:
- Skip trivial glue (re-exports, one-line wrappers).
- Do NOT return the whole molecule as a single atom.

RESPOND with JSON:
{"atoms": [{"name", "description", "code", "is_demoable"}]}"""


def build_atoms_prompt(molecule_name: str, files: List[SourceFile]) -> str:
    return (
        f'MOLECULE: "{molecule_name}"\n\n'
        f"SOURCE FILES ({len(files)} files):\n\n{_file_blocks(files)}\n\n"
        "Extract the atoms."
    )


# ── Judge ───────────────────────────────────────────────────────────────────

JUDGE_PROMPT = """\
You are a code library curator. You receive a NEW snippet and a list of \
CANDIDATES from the library. Your job is to find the meaningful matches and \
classify each relationship. You may return zero, one or several matches; \
put the BEST one first.

LIBRARY STRUCTURE:
- Items are organized in a parent/child tree.
- A PARENT is an abstract item (generic code) that represents a shared \
concept. Its CHILDREN are concrete implementations (variants).
- SIBLINGS are children of the same parent.
- STANDALONE items have no parent and no children.

Each candidate includes its family context (role, parent, siblings, children) \
and RELATIONSHIPS between candidates are noted (e.g. "#1 is a child of #3").

VERDICTS:
- "variant": the new snippet and the candidate solve the SAME abstract \
problem with different implementations.
- "parent_of": the new snippet is MORE ABSTRACT than the candidate, or the \
candidate already covers it; the existing item is reused in its place.
- "expansion": the new snippet adds NEW FUNCTIONALITY to the candidate. It \
extends what the candidate does rather than being an alternative.

DECISION STRATEGY:
1. CHILD candidate + "variant" → prefer the PARENT's id when it is listed.
2. Any candidate + "expansion" → use that candidate's exact id.
3. Use ONLY ids that appear in the candidate list.
4. If no candidate truly fits → return an empty matches array. Do NOT force matches.

RESPOND with JSON:
{"matches": [{"candidateId": <id>, "verdict": "variant" | "parent_of" | "expansion",
              "confidence": 0.0-1.0, "reasoning": "1-2 sentences"}]}"""


def _refs(refs) -> str:
    return ", ".join(f"{r.name} (id:{r.id})" for r in refs)


def candidate_relationships(candidates: List[JudgeCandidate]) -> List[str]:
    """Parent/child links between candidates, by 1-based position."""
    position = {c.id: i + 1 for i, c in enumerate(candidates)}
    relationships: List[str] = []
    for c in candidates:
        if c.role == FamilyRole.CHILD and c.parent and c.parent.id in position:
            line = f"#{position[c.id]} is a child of #{position[c.parent.id]} (same family)"
            if line not in relationships:
                relationships.append(line)
        for child in c.children:
            if child.id in position:
                line = f"#{position[child.id]} is a child of #{position[c.id]} (same family)"
                if line not in relationships:
                    relationships.append(line)
    return relationships


def build_judge_prompt(piece: Piece, description: str, candidates: List[JudgeCandidate]) -> str:
    blocks = []
    for i, c in enumerate(candidates):
        lines = [
            f"--- #{i + 1} (id:{c.id}, score:{c.combined_score:.3f}) {c.role.value} ---",
            f"Name: {c.name}",
            f"Description: {c.description or 'N/A'}",
            f"Code:\n{c.code}",
        ]
        if c.children:
            lines.append(f"Children: {_refs(c.children)}")
        if c.parent:
            lines.append(f"Parent: {c.parent.name} (id:{c.parent.id})")
            if c.siblings:
                lines.append(f"Siblings: {_refs(c.siblings)}")
        blocks.append("\n".join(lines))

    relationships = candidate_relationships(candidates)
    relationships_block = (
        "\nINTER-CANDIDATE RELATIONSHIPS:\n" + "\n".join(f"- {r}" for r in relationships)
        if relationships else ""
    )

    return (
        "NEW SNIPPET:\n"
        f"Name: {piece.name}\n"
        f"Description: {description or 'N/A'}\n"
        f"Code:\n{piece.code or piece.description}\n\n"
        f"CANDIDATES ({len(candidates)}, ordered by combined score):\n\n"
        + "\n\n".join(blocks)
        + f"\n{relationships_block}\n\n"
        "Return the meaningful matches, best first (or an empty array if none fit)."
    )


# ── Abstract parent ─────────────────────────────────────────────────────────

PARENT_CREATOR_PROMPT = """\
You are a code library architect. Given two variant snippets that solve the \
same abstract problem differently, you create an ABSTRACT PARENT snippet \
that represents the shared concept.

The parent:
- Has GENERIC code that captures the core pattern both variants share. Use \
generic names: items, data, handler, callback, options. No domain-specific terms.
- Has a name that describes the abstract concept (not either variant specifically).
- Has a description that explains the shared pattern in 2-3 sentences.
- Has useCases that cover the abstract concept, not the specific variants.

RESPOND with JSON:
{"name", "description", "code", "useCases": [{"title", "use"}],
 "type", "domain", "stack", "language", "libraries", "tags"}"""


def build_parent_creator_prompt(
    name_a: str, code_a: Optional[str], description_a: Optional[str],
    name_b: str, code_b: Optional[str], description_b: Optional[str],
) -> str:
    return (
        "VARIANT A:\n"
        f"Name: {name_a}\nDescription: {description_a or 'N/A'}\nCode:\n{code_a or ''}\n\n"
        "VARIANT B:\n"
        f"Name: {name_b}\nDescription: {description_b or 'N/A'}\nCode:\n{code_b or ''}\n\n"
        "Create the abstract parent snippet."
    )
