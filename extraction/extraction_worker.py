import logging
import time
import traceback
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError
from sqlalchemy.orm import Session

from extraction import settings
from extraction.context_builder import ContextBuildError, ContextBuilder
from extraction.note_committer import NoteCommitter
from extraction.nvq_evaluator import NVQEvaluator, aggregate_metrics
from extraction.nvq_types import ExtractionContext, NoteCandidate, NVQEvaluationResult, ScoredCandidate
from extraction.prompt_builder import PromptBuilder
from extraction.queue_store import ClaimLostError, ClaimedJob, QueueStore
from extraction.utils import Utils

logger = logging.getLogger("nvq_extraction")

Generate = Callable[[str, str], str]


class GenerationError(Exception):
    pass


class ExtractionWorker(Utils):
    """
    Runs one claimed job end to end:
    context -> generate -> score -> refine (bounded) -> commit -> complete.

    Only context building and the first generation call can fail the job;
    everything after that is absorbed per candidate.
    """

    def __init__(
        self,
        SessionFactory: Callable[[], Session],
        generate: Optional[Generate] = None,
        *,
        passing_threshold: Optional[int] = None,
        max_refinement_attempts: Optional[int] = None,
        time_budget_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.SessionFactory = SessionFactory
        self.store = QueueStore(SessionFactory)
        self.context_builder = ContextBuilder(SessionFactory)
        self.committer = NoteCommitter(SessionFactory)
        self.prompts = PromptBuilder()
        self._generate = generate
        self.passing_threshold = (
            settings.NVQ_PASSING_THRESHOLD if passing_threshold is None else passing_threshold
        )
        self.max_refinement_attempts = (
            settings.MAX_REFINEMENT_ATTEMPTS if max_refinement_attempts is None else max_refinement_attempts
        )
        self.time_budget_seconds = (
            settings.JOB_TIME_BUDGET_SECONDS if time_budget_seconds is None else time_budget_seconds
        )
        # a claim older than this is swept; the worst case of one more generator call must fit in it
        self.liveness_seconds = settings.STUCK_JOB_MINUTES * 60
        self.call_allowance_seconds = settings.LLM_TIMEOUT * settings.LLM_RETRIES
        self.clock = clock

    # -----------------------
    # LLM plumbing
    # -----------------------

    @property
    def generate(self) -> Generate:
        if self._generate is None:
            from extraction.llm_client import ChatLlmClient

            chat_llm = ChatLlmClient(
                model_name=settings.EXTRACTION_MODEL,
                vertex_project=settings.PROJECT_ID,
                vertex_region=settings.REGION,
                timeout=settings.LLM_TIMEOUT,
                retries=settings.LLM_RETRIES,
            )
            self._generate = chat_llm.generate
        return self._generate

    # -----------------------
    # Job
    # -----------------------

    def run(self, job: ClaimedJob) -> Dict[str, Any]:
        started = self.clock()
        self.color_print(
            f"Processing {job.source_type} {job.source_id} for user {job.user_id} "
            f"(job {job.id}, attempt {job.attempts}/{job.max_attempts})",
            color="blue",
        )
        try:
            context = self.context_builder.build(job.user_id, job.content_snapshot)
            raw = self._initial_generation(job, context)
        except (ContextBuildError, GenerationError) as e:
            return self._fail(job, str(e))

        try:
            candidates, parse_note = self._parse_candidates(raw)
            if not candidates:
                message = parse_note or "No extractable content"
                if not self.store.skip(job, parse_note):
                    return self._lost_claim(job, message)
                return self._result(job, "skipped", message=message)

            scored, refinement_calls = self._score_and_refine(job, candidates, context, started)
            if not self.store.still_holds(job):
                return self._lost_claim(job, "claim lost before commit")
            report = self.committer.commit_batch(job, scored, context)

            metrics = aggregate_metrics([
                NVQEvaluationResult(s.candidate.title, s.candidate.content, s.score, s.issues)
                for s in scored
            ])
            nvq_metrics = {
                **metrics.to_dict(),
                **report.to_dict(),
                "refinement_calls": refinement_calls,
                "needs_review": sum(1 for s in scored if not s.score.passing),
            }
            if not self.store.complete(job, report.notes_touched, nvq_metrics):
                return self._lost_claim(job, "claim lost before completion")
            return self._result(
                job,
                "completed",
                notes_created=report.notes_touched,
                notes_consolidated=report.consolidated,
                mean_nvq=metrics.mean_nvq,
                passing_rate=metrics.passing_rate,
            )
        except ClaimLostError as e:
            return self._lost_claim(job, str(e))
        except Exception as e:
            logger.error("job %s crashed after generation: %s\n%s", job.id, e, traceback.format_exc())
            return self._fail(job, f"Unexpected error: {e}")

    def _fail(self, job: ClaimedJob, message: str) -> Dict[str, Any]:
        self.color_print(f"Extraction error for job {job.id}: {message}", color="red")
        status = self.store.fail(job, message)
        return self._result(job, status or "lost_claim", message=message)

    def _lost_claim(self, job: ClaimedJob, message: str) -> Dict[str, Any]:
        logger.warning("job %s: %s; another worker owns it now, abandoning", job.id, message)
        return self._result(job, "lost_claim", message=message)

    def _result(self, job: ClaimedJob, status: str, **extra) -> Dict[str, Any]:
        return {"job_id": job.id, "status": status, **extra}

    def _initial_generation(self, job: ClaimedJob, context: ExtractionContext) -> str:
        prompt = self.prompts.build_extraction_prompt(context, self.passing_threshold)
        try:
            return self.generate(prompt, job.content_snapshot)
        except Exception as e:
            raise GenerationError(f"Generation failed: {e}") from e

    def _parse_candidates(self, raw: str) -> Tuple[List[NoteCandidate], Optional[str]]:
        """
        Returns (candidates, note). An unusable reply counts as zero
        candidates; note says why when that was not a plain {"notes": []}.
        """
        data = self.parse_generator_object(raw)
        if data is None:
            return [], "Generator reply contained no parseable JSON object"

        raw_notes = data.get("notes") or []
        if not isinstance(raw_notes, list):
            return [], "Generator reply 'notes' is not a list"

        candidates: List[NoteCandidate] = []
        for i, entry in enumerate(raw_notes):
            if not isinstance(entry, dict):
                logger.warning("candidate #%d is not an object, skipped", i)
                continue
            try:
                candidates.append(NoteCandidate.model_validate(entry))
            except ValidationError as e:
                logger.warning("candidate #%d rejected: %s", i, e)

        if raw_notes and not candidates:
            return [], "No valid candidates in generator reply"
        return candidates, None

    # -----------------------
    # Scoring / refinement
    # -----------------------

    def _score_and_refine(
        self,
        job: ClaimedJob,
        candidates: List[NoteCandidate],
        context: ExtractionContext,
        started: float,
    ) -> Tuple[List[ScoredCandidate], int]:
        evaluator = NVQEvaluator.for_context(context, self.passing_threshold)
        scored: List[ScoredCandidate] = []
        calls = 0
        for candidate in candidates:
            score = evaluator.evaluate_note(candidate)
            item = ScoredCandidate(candidate, score, evaluator.identify_issues(score))
            logger.debug("scored '%s': %d/10 %s", candidate.title, score.total, score.component_scores())
            # merges are scored for the record but not rewritten
            if not score.passing and not candidate.will_consolidate:
                item = self._refine(job, item, evaluator, context, started)
                calls += item.refinement_attempts
            scored.append(item)
        return scored, calls

    def _over_budget(self, started: float) -> bool:
        elapsed = self.clock() - started
        if elapsed > self.time_budget_seconds:
            return True
        return elapsed + self.call_allowance_seconds > self.liveness_seconds

    def _refine(
        self,
        job: ClaimedJob,
        item: ScoredCandidate,
        evaluator: NVQEvaluator,
        context: ExtractionContext,
        started: float,
    ) -> ScoredCandidate:
        for attempt in range(1, self.max_refinement_attempts + 1):
            if self._over_budget(started):
                logger.warning("job %s: time budget spent, '%s' stays at %d/10", job.id, item.candidate.title, item.score.total)
                break

            item.refinement_attempts = attempt
            prompt = self.prompts.build_refinement_prompt(
                item.candidate, item.score, item.issues, context, self.passing_threshold
            )
            try:
                raw = self.generate(prompt, job.content_snapshot)
            except Exception as e:
                logger.warning("refinement %d of '%s' failed: %s", attempt, item.candidate.title, e)
                continue

            refined = self._parse_refinement(raw, item.candidate)
            if refined is None:
                logger.warning("refinement %d of '%s' returned no usable note", attempt, item.candidate.title)
                continue

            candidate = item.candidate.merged_with(refined)
            score = evaluator.evaluate_note(candidate)
            logger.debug("refinement %d of '%s': %d -> %d", attempt, candidate.title, item.score.total, score.total)
            item.candidate = candidate
            item.score = score
            item.issues = evaluator.identify_issues(score)
            if score.passing:
                break
        return item

    def _parse_refinement(self, raw: str, original: NoteCandidate) -> Optional[NoteCandidate]:
        data = self.parse_generator_object(raw)
        if data is None:
            return None
        # tolerate a {"notes": [...]} wrapper
        notes = data.get("notes")
        if isinstance(notes, list) and notes and isinstance(notes[0], dict):
            data = notes[0]
        payload = {"title": original.title, "content": original.content, **data}
        try:
            return NoteCandidate.model_validate(payload)
        except ValidationError as e:
            logger.warning("refined note rejected: %s", e)
            return None
