# src/autoloop/core/query_planner.py
"""
Query Planner & Synthesizer - retrieval context for generation.

Decomposes an intent into sub-queries, runs them in parallel (local index
first, Oracle second), and merges the results with one of four synthesis
strategies. ASYNC for Oracle calls, SYNC for indexing and scoring.
"""
import asyncio
import hashlib
import json
import logging
import re
from typing import Dict, List, Optional, Any, Iterable, Tuple

from autoloop.api.client import GenerationOracle, GenerationOptions, OracleError
from autoloop.core.errors import PlanningFailure, QueryExecutionFailure
from autoloop.core.models import (
    CodeContext, QueryPlan, QueryResult, QueryType, SubQuery, SynthesisStrategy
)
from autoloop.core.retry import RetryPolicy
from autoloop.core.schemas import ContextsPayload, PlanPayload
from autoloop.core.structured import request_structured, request_text

logger = logging.getLogger(__name__)

MIN_SUB_QUERIES = 2
MAX_SUB_QUERIES = 5
MAX_INDEXED_CHARS = 5000
CONFIDENCE_LENGTH_SATURATION = 500

LANGUAGE_EXTENSIONS: Dict[str, List[str]] = {
    'typescript': ['.ts', '.tsx'],
    'javascript': ['.js', '.jsx'],
    'python': ['.py'],
    'java': ['.java'],
    'rust': ['.rs'],
    'go': ['.go'],
    'cpp': ['.cpp', '.hpp', '.h'],
    'csharp': ['.cs'],
}

_IMPORT_PATTERNS = [
    re.compile(r"""(?:import|require)\s*\(?\s*['"]([^'"]+)['"]"""),  # JS / TS
    re.compile(r"""\bfrom\s+['"]([^'"]+)['"]"""),  # ES module "import x from 'y'"
    re.compile(r"^\s*from\s+([\w.]+)\s+import\b", re.MULTILINE),  # Python
    re.compile(r"^\s*import\s+([\w.]+)", re.MULTILINE),
]
_EXPORT_PATTERNS = [
    re.compile(r"export\s+(?:default\s+)?(?:async\s+)?(?:class|function|const|let|var)\s+(\w+)"),
    re.compile(r"^(?:async\s+)?def\s+([A-Za-z]\w*)", re.MULTILINE),
    re.compile(r"^class\s+([A-Za-z]\w*)", re.MULTILINE),
]
_WORD_RE = re.compile(r"[a-z0-9]+")
_STOPWORDS = {'the', 'a', 'an', 'and', 'or', 'of', 'to', 'in', 'for', 'with', 'on', 'how', 'that', 'is', 'by'}


def extensions_for(language: Optional[str]) -> List[str]:
    """File extensions for a language name; unknown languages give []."""
    if not language:
        return []
    return list(LANGUAGE_EXTENSIONS.get(language.lower(), []))


def _unique(items: Iterable[str]) -> List[str]:
    return list(dict.fromkeys(items))


def extract_dependencies(content: str) -> List[str]:
    """Imported module names, in first-seen order."""
    found = []
    for pattern in _IMPORT_PATTERNS:
        for match in pattern.finditer(content):
            found.append((match.start(), match.group(1)))
    return _unique(name for _, name in sorted(found))


def extract_exports(content: str) -> List[str]:
    found = []
    for pattern in _EXPORT_PATTERNS:
        for match in pattern.finditer(content):
            found.append((match.start(), match.group(1)))
    return _unique(name for _, name in sorted(found))


def calculate_confidence(contexts: List[CodeContext], synthesized_context: str) -> float:
    """Mean relevance scaled by how much text was synthesized.

    The length factor saturates at 1 once the text reaches 500 characters.
    """
    if not contexts:
        return 0.0
    avg_relevance = sum(c.relevance for c in contexts) / len(contexts)
    length_factor = min(1.0, len(synthesized_context) / CONFIDENCE_LENGTH_SATURATION)
    return min(1.0, max(0.0, avg_relevance * length_factor))


def _keywords(text: str) -> List[str]:
    return [w for w in _WORD_RE.findall(text.lower()) if w not in _STOPWORDS and len(w) > 1]


def _query_id(text: str, query_type: QueryType, filters: Dict[str, Any]) -> str:
    """Content-derived id, so a recurring sub-query hits the cache."""
    key = json.dumps([text, query_type.value, filters], sort_keys=True, default=str)
    return "query_" + hashlib.sha1(key.encode('utf-8')).hexdigest()[:12]


class QueryPlanner:
    """Plans, executes and synthesizes retrieval queries."""

    def __init__(self, oracle: GenerationOracle, retry_policy: Optional[RetryPolicy] = None):
        self.oracle = oracle
        self.retry_policy = retry_policy or RetryPolicy()
        self._cache: Dict[str, List[CodeContext]] = {}
        self._index: Dict[str, CodeContext] = {}

    # ------------------------------------------------------------------
    # Indexing (SYNC)
    # ------------------------------------------------------------------

    def index_codebase(self, files: Iterable[Tuple[str, str]]) -> int:
        """Index (path, content) pairs for local retrieval. Returns index size."""
        count = 0
        for file_path, content in files:
            self._index[file_path] = CodeContext(
                file_path=file_path,
                content=content[:MAX_INDEXED_CHARS],
                relevance=1.0,
                dependencies=extract_dependencies(content),
                exports=extract_exports(content)
            )
            count += 1
        logger.info(f"Indexed {count} files ({len(self._index)} total)")
        return len(self._index)

    def search_index(self, sub_query: SubQuery, max_results: int = 5) -> List[CodeContext]:
        """Keyword-overlap search over the local index."""
        terms = set(_keywords(sub_query.query_text))
        if not terms or not self._index:
            return []

        extensions = sub_query.filters.get('file_extensions') or []
        directories = sub_query.filters.get('directories') or []
        max_results = int(sub_query.filters.get('max_results', max_results))

        scored = []
        for path, ctx in self._index.items():
            if extensions and not any(path.endswith(ext) for ext in extensions):
                continue
            if directories and not any(path.startswith(d.rstrip('/') + '/') or path == d for d in directories):
                continue
            haystack = set(_keywords(path + " " + ctx.content + " " + " ".join(ctx.exports)))
            overlap = len(terms & haystack) / len(terms)
            if overlap > 0:
                scored.append((overlap, path, ctx))

        scored.sort(key=lambda item: (-item[0], item[1]))
        return [
            CodeContext(file_path=ctx.file_path, content=ctx.content, relevance=overlap,
                        dependencies=list(ctx.dependencies), exports=list(ctx.exports))
            for overlap, _, ctx in scored[:max_results]
        ]

    @property
    def index_size(self) -> int:
        return len(self._index)

    def clear_cache(self):
        self._cache.clear()

    def reset(self):
        """Drop the cache and the index."""
        self._cache.clear()
        self._index.clear()

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    async def plan(self, intent: str, options: Optional[Dict[str, Any]] = None) -> QueryPlan:
        """Decompose intent into at most five sub-queries.

        Any planning failure yields a single code_search query for the raw
        intent with the concatenate strategy.
        """
        options = options or {}
        try:
            plan = await self._plan_with_oracle(intent, options)
        except PlanningFailure as e:
            logger.warning(f"Planning failed, using fallback plan: {e}")
            plan = self._fallback_plan(intent, options)

        logger.info(f"Plan {plan.plan_id}: {len(plan.sub_queries)} sub-queries, "
                    f"strategy={plan.synthesis_strategy.value}")
        return plan

    async def _plan_with_oracle(self, intent: str, options: Dict[str, Any]) -> QueryPlan:
        try:
            payload = await request_structured(
                self.oracle, self._build_plan_prompt(intent), PlanPayload, self.retry_policy,
                GenerationOptions(temperature=0.5), description="query planning"
            )
        except OracleError as e:
            raise PlanningFailure(str(e)) from e

        if not payload.sub_queries:
            raise PlanningFailure("Oracle returned no sub-queries")
        if len(payload.sub_queries) < MIN_SUB_QUERIES:
            logger.warning(f"Oracle proposed {len(payload.sub_queries)} sub-query, "
                           f"fewer than the {MIN_SUB_QUERIES} asked for; using it as is")
        if len(payload.sub_queries) > MAX_SUB_QUERIES:
            logger.info(f"Truncating {len(payload.sub_queries)} sub-queries to {MAX_SUB_QUERIES}")

        sub_queries = []
        for item in payload.sub_queries[:MAX_SUB_QUERIES]:
            filters = self._apply_options(dict(item.filters), options)
            sub_queries.append(SubQuery(
                query_id=_query_id(item.query_text, item.query_type, filters),
                query_text=item.query_text,
                query_type=item.query_type,
                filters=filters
            ))

        return QueryPlan(
            original_intent=intent,
            sub_queries=sub_queries,
            synthesis_strategy=payload.synthesis_strategy
        )

    def _fallback_plan(self, intent: str, options: Dict[str, Any]) -> QueryPlan:
        filters = self._apply_options({}, options)
        return QueryPlan(
            original_intent=intent,
            sub_queries=[SubQuery(
                query_id=_query_id(intent, QueryType.CODE_SEARCH, filters),
                query_text=intent,
                query_type=QueryType.CODE_SEARCH,
                filters=filters
            )],
            synthesis_strategy=SynthesisStrategy.CONCATENATE,
            is_fallback=True
        )

    def _apply_options(self, filters: Dict[str, Any], options: Dict[str, Any]) -> Dict[str, Any]:
        extensions = extensions_for(options.get('language'))
        if extensions:
            filters['file_extensions'] = extensions
        if options.get('directories'):
            filters['directories'] = list(options['directories'])
        if options.get('max_depth') is not None:
            filters['max_depth'] = options['max_depth']
        return filters

    def _build_plan_prompt(self, intent: str) -> str:
        return f"""# RETRIEVAL PLANNING

## INTENT
{intent}

## TASK
1. Identify the key entities, code patterns and dependencies the intent involves.
2. Create 2-5 specific sub-queries, each targeting a different aspect.
   Types: code_search, documentation, api_reference, pattern_search, dependency_graph
3. Choose a synthesis strategy:
   - concatenate: independent results
   - summarize: large results that need condensing
   - graph_based: related code best understood as a dependency graph
   - hierarchical: overview, then implementation details, then best practices

## OUTPUT FORMAT (JSON)
{{
  "sub_queries": [
    {{"query_text": "...", "query_type": "code_search", "filters": {{"directories": ["src/auth"]}}}}
  ],
  "synthesis_strategy": "concatenate"
}}
"""

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def query(self, intent: str, options: Optional[Dict[str, Any]] = None) -> QueryResult:
        """Plan, execute all sub-queries concurrently, synthesize, score."""
        plan = await self.plan(intent, options)

        contexts = await asyncio.gather(*(self._execute_cached(q) for q in plan.sub_queries))
        query_results = {q.query_id: ctx for q, ctx in zip(plan.sub_queries, contexts)}

        all_contexts = [c for ctx in contexts for c in ctx]
        synthesized = await self.synthesize(plan, query_results)
        confidence = calculate_confidence(all_contexts, synthesized)

        logger.info(f"Query '{intent[:50]}' -> {len(all_contexts)} contexts, confidence {confidence:.2f}")
        return QueryResult(
            plan=plan,
            query_results=query_results,
            synthesized_context=synthesized,
            confidence_score=confidence
        )

    async def _execute_cached(self, sub_query: SubQuery) -> List[CodeContext]:
        cached = self._cache.get(sub_query.query_id)
        if cached is not None:
            logger.debug(f"Cache hit for {sub_query.query_id}")
            return cached

        try:
            results = await self.execute_sub_query(sub_query)
        except QueryExecutionFailure as e:
            logger.warning(f"Sub-query '{sub_query.query_text[:50]}' failed: {e}")
            return []

        # Failures are not cached so a later run can retry them
        self._cache.setdefault(sub_query.query_id, results)
        return self._cache[sub_query.query_id]

    async def execute_sub_query(self, sub_query: SubQuery) -> List[CodeContext]:
        """Local index first; the Oracle only when the index has nothing."""
        local = self.search_index(sub_query)
        if local:
            logger.debug(f"{len(local)} local matches for '{sub_query.query_text[:50]}'")
            return local

        prompt = f"""# CODE RETRIEVAL

Query ({sub_query.query_type.value}): {sub_query.query_text}
Filters: {json.dumps(sub_query.filters)}

Return 3-5 relevant code contexts as JSON:
{{"contexts": [{{"file_path": "...", "content": "...", "relevance": 0.0, "dependencies": [], "exports": []}}]}}
relevance is between 0 and 1.
"""
        try:
            payload = await request_structured(
                self.oracle, prompt, ContextsPayload, self.retry_policy,
                GenerationOptions(temperature=0.3), description=f"sub-query {sub_query.query_id}"
            )
        except OracleError as e:
            raise QueryExecutionFailure(str(e)) from e

        return [
            CodeContext(
                file_path=c.file_path,
                content=c.content,
                relevance=c.relevance,
                dependencies=c.dependencies or extract_dependencies(c.content),
                exports=c.exports or extract_exports(c.content)
            )
            for c in payload.contexts
        ]

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    async def synthesize(self, plan: QueryPlan, query_results: Dict[str, List[CodeContext]]) -> str:
        """Merge results with the plan's strategy; concatenate on any failure."""
        strategy = plan.synthesis_strategy
        if strategy == SynthesisStrategy.CONCATENATE:
            return self._concatenate(plan, query_results)

        contexts = [c for ctx in query_results.values() for c in ctx]
        if not contexts:
            return self._concatenate(plan, query_results)

        prompt = self._build_synthesis_prompt(strategy, plan, query_results, contexts)
        try:
            return await request_text(self.oracle, prompt, self.retry_policy,
                                      GenerationOptions(temperature=0.3),
                                      description=f"{strategy.value} synthesis")
        except OracleError as e:
            logger.warning(f"{strategy.value} synthesis failed, concatenating instead: {e}")
            return self._concatenate(plan, query_results)

    def _concatenate(self, plan: QueryPlan, query_results: Dict[str, List[CodeContext]]) -> str:
        sections = []
        for sub_query in plan.sub_queries:
            for ctx in query_results.get(sub_query.query_id, []):
                sections.append(f"// {ctx.file_path} ({sub_query.query_text})\n{ctx.content}")
        return "\n\n".join(sections)

    def _build_synthesis_prompt(self, strategy: SynthesisStrategy, plan: QueryPlan,
                                query_results: Dict[str, List[CodeContext]],
                                contexts: List[CodeContext]) -> str:
        raw = self._concatenate(plan, query_results)

        if strategy == SynthesisStrategy.SUMMARIZE:
            return f"""Summarize the code below for this intent: {plan.original_intent}

Keep signatures, data shapes and integration points. Drop boilerplate.

{raw}
"""

        if strategy == SynthesisStrategy.GRAPH_BASED:
            graph = {c.file_path: c.dependencies for c in contexts}
            return f"""Explain how these modules relate, for this intent: {plan.original_intent}

Dependency graph (file -> imports):
{json.dumps(graph, indent=2)}

Describe the call/data flow through the graph, then quote the relevant code.

{raw}
"""

        # HIERARCHICAL
        return f"""Organize the retrieved code for this intent: {plan.original_intent}

Structure the answer as:
## Overview
## Implementation Details
## Best Practices

{raw}
"""
