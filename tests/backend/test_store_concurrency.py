from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from backend.app.models import (
    CandidateCreateRequest,
    ProcessCreateRequest,
    StageDefinition,
    TimelineEventType,
)
from backend.app.store import InMemoryStore


def test_concurrent_moves_and_comments_keep_timeline_consistent() -> None:
    store = InMemoryStore()
    process, stages = store.create_process(
        ProcessCreateRequest(
            title="Recepcionista",
            stages=[
                StageDefinition(name="Aplicación"),
                StageDefinition(name="Entrevista", responsible="Ana Pérez"),
                StageDefinition(name="Oferta"),
            ],
        )
    )
    candidates = [
        store.create_candidate(
            CandidateCreateRequest(
                name=f"Candidato {index}",
                email=f"candidato{index}@example.com",
                process_id=process.id,
                current_stage_id=stages[0].id,
            ),
            author="Usuario",
        )
        for index in range(40)
    ]
    read_errors: list[Exception] = []

    def writer(candidate_id: int) -> None:
        store.move_candidate_to_stage(candidate_id, stages[1].id, author="Laura Gómez")
        store.add_comment(candidate_id, "Revisado", author="Laura Gómez")
        store.move_candidate_to_stage(candidate_id, stages[2].id, author="Laura Gómez")

    def reader() -> None:
        for _ in range(200):
            try:
                store.list_candidates(process_id=process.id)
                store.list_notifications(recipient_name="Ana Pérez")
                store.list_changes(since=0, limit=500)
            except Exception as exc:  # pragma: no cover - regression trap
                read_errors.append(exc)

    with ThreadPoolExecutor(max_workers=10) as executor:
        futures = [executor.submit(writer, candidate.id) for candidate in candidates]
        futures.extend(executor.submit(reader) for _ in range(4))
        for future in futures:
            future.result()

    assert not read_errors
    for candidate in candidates:
        stored = store.get_candidate(candidate.id)
        assert stored.current_stage_id == stages[2].id
        assert stored.comments == 1
        kinds = [event.type for event in store.list_timeline(candidate.id)]
        assert kinds.count(TimelineEventType.stage_change) == 2
    assert len(store.list_notifications(recipient_name="Ana Pérez")) == 40
    assert len(store.list_outbox()) == 40
