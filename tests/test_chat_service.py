import pytest

from src.branchchat.domain.chat_models import ConversationCreate, MessageCreate
from src.branchchat.domain.errors import InvariantViolation, NotFound, RateLimited, Unauthorized
from src.branchchat.infrastructure.chat_store import InMemoryChatStore
from src.branchchat.security.rate_limit import FIXED_WINDOW, RateLimiter, RateLimitPolicy, load_policy_table
from src.branchchat.services.chat_service import ChatService, fallback_title

from .utils import identity


@pytest.fixture
def service(clock):
    return ChatService(InMemoryChatStore(clock=clock), RateLimiter(clock=clock), clock=clock)


def test_fallback_title():
    assert fallback_title("short question") == "short question"
    assert fallback_title("y" * 30) == "y" * 30
    assert fallback_title("z" * 31) == "z" * 27 + "..."


def test_prompt_history_keeps_last_ten_complete_messages(service, clock):
    alice = identity("alice")
    conv = service.create_conversation(alice, ConversationCreate(title="History"))
    for n in range(12):
        clock.advance(10)
        kind = "user" if n % 2 == 0 else "ai"
        service.send_message(conv.conversation_id, alice, MessageCreate(content=f"m{n}", kind=kind))
    history = service.prompt_history(conv.conversation_id)
    assert len(history) == 10
    assert history[0] == {"role": "user", "content": "m2"}
    assert history[-1] == {"role": "assistant", "content": "m11"}


def test_prompt_history_can_stop_at_a_message(service, clock):
    alice = identity("alice")
    cid = service.create_conversation(alice, ConversationCreate()).conversation_id
    question = service.send_message(cid, alice, MessageCreate(content="q"))
    service.send_message(cid, alice, MessageCreate(content="a", kind="ai"))
    history = service.prompt_history(cid, upto_message_id=question.message_id)
    assert history == [{"role": "user", "content": "q"}]


def test_explicit_parent_must_be_in_conversation(service):
    alice = identity("alice")
    cid = service.create_conversation(alice, ConversationCreate()).conversation_id
    with pytest.raises(NotFound):
        service.send_message(cid, alice, MessageCreate(content="x", parent_message_id="elsewhere"))
    # The rejected send was not charged
    status = service.admission.status(alice, None)
    assert status.user.remaining == 120


def test_conversation_creation_is_rate_limited(clock):
    policies = load_policy_table()
    policies["conversationCreation"] = RateLimitPolicy(FIXED_WINDOW, 2, 60_000)
    service = ChatService(InMemoryChatStore(clock=clock), RateLimiter(policies=policies, clock=clock), clock=clock)
    alice = identity("alice")
    service.create_conversation(alice, ConversationCreate())
    service.create_conversation(alice, ConversationCreate())
    with pytest.raises(RateLimited) as exc:
        service.create_conversation(alice, ConversationCreate())
    assert exc.value.limit_name == "conversationCreation"


def test_rejected_branch_index_does_not_consume_quota(service):
    alice = identity("alice")
    cid = service.create_conversation(alice, ConversationCreate()).conversation_id
    root = service.send_message(cid, alice, MessageCreate(content="root"))
    service.send_message(
        cid,
        alice,
        MessageCreate(content="first", parent_message_id=root.message_id, branch_index=0, ai_model="openai/o1-pro"),
    )
    before = service.admission.status(alice, "openai/o1-pro").model_daily.remaining
    for _ in range(3):
        with pytest.raises(InvariantViolation) as exc:
            service.send_message(
                cid,
                alice,
                MessageCreate(content="again", parent_message_id=root.message_id, branch_index=0, ai_model="openai/o1-pro"),
            )
        assert exc.value.code == "BRANCH_INDEX_TAKEN"
    assert service.admission.status(alice, "openai/o1-pro").model_daily.remaining == before == 6


def test_stream_parent_is_resolved_inside_the_conversation(service):
    alice = identity("alice")
    mine = service.create_conversation(alice, ConversationCreate()).conversation_id
    other = service.create_conversation(identity("bob"), ConversationCreate()).conversation_id
    theirs = service.send_message(other, identity("bob"), MessageCreate(content="private"))
    with pytest.raises(NotFound):
        service.resolve_stream_parent(mine, alice, parent_message_id=theirs.message_id)
    with pytest.raises(Unauthorized):
        service.resolve_stream_parent(other, alice, parent_message_id=theirs.message_id)
