import asyncio

import pytest

from chorus.errors import TransportError
from chorus.graph import GraphBuilder, NodeState
from chorus.scheduler import Scheduler, run, run_async
from chorus.transport import LoopbackTransport, Message, Transport, echo_actor
from chorus.verdict import Status


def _codes(verdict):
    return [diag.code for diag in verdict.diagnostics]


def test_write_once_bind_mismatch_fails_requirement(builder):
    builder.add_bind("first", "$X", 42)
    builder.add_bind("same", "$X", 42)
    builder.add_bind("other", "$X", 43, require="reached")
    verdict = run(builder.build())
    assert verdict.status is Status.FAIL
    assert verdict.bindings == {"X": 42}
    assert verdict.states == {"first": "complete", "same": "complete", "other": "ready_incomplete"}
    assert [ref.path for ref in verdict.unmet] == ["other"]
    diag = verdict.diagnostics[0]
    assert diag.code == "CH-5001"
    assert diag.location == "test.yaml:other#2"
    assert diag.expected == "$X"
    assert diag.last_seen == 43


def test_positional_and_partial_object_binds(builder):
    builder.add_bind("arr", ["$HEAD", "$_", "$TAIL"], ["a", "b", "c"], require="reached")
    builder.add_bind("obj", {"id": "$ID"}, {"id": 7, "extra": "x"}, require="reached")
    verdict = run(builder.build())
    assert verdict.ok
    assert verdict.bindings == {"HEAD": "a", "TAIL": "c", "ID": 7}


def test_unbound_src_aborts_run(builder):
    builder.add_bind("bad", "$A", "$B")
    builder.add_bind("later", "$C", 1)
    builder.add_send("never", "x", require="reached")
    verdict = run(builder.build())
    assert verdict.status is Status.FAIL
    assert verdict.error is not None
    assert verdict.error.code == "CH-3001"
    assert verdict.states["bad"] == "failed"
    assert verdict.states["later"] == "ready_incomplete"
    assert verdict.states["never"] == "ready_incomplete"
    assert verdict.bindings == {}
    assert _codes(verdict)[0] == "CH-3001"
    assert verdict.diagnostics[0].node == "bad"


def test_bind_runs_before_send_whatever_the_declaration_order(builder):
    builder.declare_dummy("box")
    builder.add_send("announce", "$X", target="box")
    builder.add_recv("observe", "$Y", to="box", require="reached")
    builder.add_bind("define", "$X", 1)
    verdict = run(builder.build())
    assert verdict.ok
    assert verdict.bindings == {"X": 1, "Y": 1}
    kinds = [entry.kind for entry in verdict.trace if entry.outcome == "complete"]
    assert kinds == ["bind", "send", "recv"]


def test_bind_waits_for_its_predecessors(builder):
    builder.declare_dummy("box")
    builder.add_bind("needs_value", {"n": "$N"}, "$MSG", after=["got"])
    builder.add_send("post", {"n": 3}, target="box")
    builder.add_recv("got", "$MSG", to="box")
    builder.add_bind("check", "$N", 3, require="reached")
    verdict = run(builder.build())
    assert verdict.ok
    assert verdict.bindings == {"N": 3, "MSG": {"n": 3}}


def test_send_and_recv_between_dummies(builder):
    builder.declare_dummy("client")
    builder.declare_dummy("server")
    builder.add_send("hello", {"id": 7}, sender="client", target="server", type="Hello")
    builder.add_recv("got", {"id": "$ID"}, source="client", to="server", type="Hello", require="reached")
    verdict = run(builder.build())
    assert verdict.ok
    assert verdict.bindings == {"ID": 7}
    assert verdict.diagnostics == []


def test_request_and_correlated_response(builder):
    builder.declare_dummy("client")
    builder.declare_dummy("server")
    builder.add_send("ask", {"q": 2}, sender="client", target="server")
    builder.add_recv("request", {"q": "$Q"}, to="server")
    builder.add_respond("answer", "request", {"a": "$Q"})
    builder.add_recv("reply", "$REPLY", to="client", source="server", require="reached")
    graph = builder.build()
    transport = LoopbackTransport()
    scheduler = Scheduler(graph, transport)
    verdict = asyncio.run(scheduler.run())
    assert verdict.ok
    assert verdict.bindings == {"Q": 2, "REPLY": {"a": 2}}
    ask, answer = transport.dispatched
    assert answer.reply_to == ask.correlation_id
    assert answer.sender == "server"
    assert answer.target == "client"


def test_echo_actor_round_trip(builder):
    builder.declare_actor("svc")
    builder.add_send("ping", {"n": 1}, target="svc", type="Ping")
    builder.add_recv("pong", {"n": "$N"}, source="svc", type="Ping", require="reached")
    transport = LoopbackTransport().actor("svc", echo_actor)
    verdict = run(builder.build(), transport)
    assert verdict.ok
    assert verdict.bindings == {"N": 1}


def test_routed_send_uses_type_routes(builder):
    builder.declare_dummy("inbox")
    builder.add_send("s", "hi", type="Greeting")
    builder.add_recv("r", "$G", to="inbox", require="reached")
    verdict = run(builder.build(), LoopbackTransport(routes={"Greeting": "inbox"}))
    assert verdict.ok
    assert verdict.bindings == {"G": "hi"}


def test_unroutable_send_is_fatal(builder):
    builder.add_send("s", "hi", type="Nowhere")
    builder.add_bind("b", "$A", 1, after=["s"])
    verdict = run(builder.build())
    assert verdict.status is Status.FAIL
    assert verdict.error.code == "CH-4001"
    assert verdict.states == {"s": "failed", "b": "pending"}
    assert _codes(verdict) == ["CH-4001"]


def test_mismatching_head_stays_in_mailbox(builder):
    builder.declare_dummy("box")
    builder.add_send("s", "b", target="box")
    builder.add_recv("r", "a", to="box", require="reached")
    verdict = run(builder.build())
    assert verdict.status is Status.FAIL
    assert _codes(verdict) == ["CH-5001", "CH-5101"]
    unmet, leftover = verdict.diagnostics
    assert unmet.expected == "a"
    assert unmet.last_seen == "b"
    assert unmet.hint == "value differs at <root>"
    assert leftover.severity == "info"
    assert leftover.last_seen == "b"
    assert "'box'" in leftover.message


def test_recv_filters_on_sender(builder):
    builder.declare_dummy("a")
    builder.declare_dummy("b")
    builder.declare_dummy("box")
    builder.add_send("from_a", 1, sender="a", target="box")
    builder.add_recv("want_b", "$V", source="b", to="box", require="reached")
    verdict = run(builder.build())
    assert not verdict.ok
    assert verdict.diagnostics[0].hint == "unexpected sender at from"


def test_delay_ticks_and_releases_scheduled_messages(builder):
    def slow_echo(ctx, message):
        ctx.send(message.payload, to=message.sender, after=2)

    builder.declare_actor("svc")
    builder.add_send("ask", "hello", target="svc")
    builder.add_recv("reply", "$R", source="svc", require="reached")
    builder.add_delay("wait", 3, require="reached")
    transport = LoopbackTransport().actor("svc", slow_echo)
    verdict = run(builder.build(), transport)
    assert verdict.ok
    assert verdict.ticks == 3
    assert verdict.bindings == {"R": "hello"}
    completed = [entry.node for entry in verdict.trace if entry.outcome == "complete"]
    assert completed == ["ask", "reply", "wait"]
    reply = next(entry for entry in verdict.trace if entry.node == "reply")
    assert reply.tick == 2


def test_zero_step_delay_does_not_advance_time(builder):
    builder.add_delay("now", 0)
    builder.add_bind("after", "$A", 1, after=["now"], require="reached")
    verdict = run(builder.build())
    assert verdict.ok
    assert verdict.ticks == 0


def test_delays_run_concurrently(builder):
    builder.add_delay("short", 1)
    builder.add_delay("long", 2)
    builder.add_bind("done", "$D", True, after=["short", "long"], require="reached")
    verdict = run(builder.build())
    assert verdict.ok
    assert verdict.ticks == 2


def test_unreached_requirement(builder):
    builder.add_bind("a", "$A", 1)
    builder.add_bind("guard", "$A", 2, require="unreached")
    builder.add_bind("oops", "$A", 1, require="unreached")
    verdict = run(builder.build())
    assert verdict.status is Status.FAIL
    assert [ref.path for ref in verdict.unmet] == ["oops"]
    assert _codes(verdict) == ["CH-5002"]


def _sub_graph():
    sub = GraphBuilder("compute", source="sub.yaml")
    sub.add_bind("work", "$RESULT", {"doubled": ["$LOCAL", "$LOCAL"]})
    sub.add_bind("shadow", "$CALLER_X", "inner")
    return sub.build()


def test_call_copies_in_and_out():
    main = GraphBuilder("main")
    main.add_subroutine("compute", _sub_graph())
    main.add_bind("x", "$CALLER_X", 5)
    main.add_call(
        "c",
        "compute",
        inputs=[("$CALLER_X", "$LOCAL")],
        outputs=[("$RESULT", "$CALLER_Y")],
        after=["x"],
        require="reached",
    )
    verdict = run(main.build())
    assert verdict.ok
    assert verdict.bindings == {"CALLER_X": 5, "CALLER_Y": {"doubled": [5, 5]}}
    assert verdict.states["c/work"] == "complete"
    assert verdict.states["c/shadow"] == "complete"
    assert [entry.outcome for entry in verdict.trace if entry.node == "c"] == ["enter", "leave", "complete"]


def test_callee_cannot_see_caller_bindings():
    sub = GraphBuilder("peek")
    sub.add_bind("look", "$COPY", "$SECRET")
    main = GraphBuilder("main")
    main.add_subroutine("peek", sub.build())
    main.add_bind("secret", "$SECRET", 1)
    main.add_call("c", "peek", outputs=[("$COPY", "$OUT")], after=["secret"])
    verdict = run(main.build())
    assert verdict.error.code == "CH-3001"
    assert verdict.states["c/look"] == "failed"
    assert verdict.states["c"] == "ready_incomplete"
    assert "OUT" not in verdict.bindings


def test_call_out_copy_mismatch_leaves_call_incomplete():
    main = GraphBuilder("main")
    main.add_subroutine("compute", _sub_graph())
    main.add_bind("y", "$CALLER_Y", "taken")
    main.add_call(
        "c",
        "compute",
        inputs=[(3, "$LOCAL")],
        outputs=[("$RESULT", "$CALLER_Y")],
        after=["y"],
        require="reached",
    )
    main.add_bind("y_again", "$CALLER_Y", "taken", after=["y"])
    verdict = run(main.build())
    assert verdict.status is Status.FAIL
    assert verdict.bindings == {"CALLER_Y": "taken"}
    assert verdict.states["c"] == "ready_incomplete"
    assert verdict.diagnostics[0].last_seen == {"doubled": [3, 3]}


def test_callee_waiting_on_mail_settles_at_quiescence():
    sub = GraphBuilder("listen")
    sub.declare_dummy("box")
    sub.add_bind("ready", "$STATUS", "listening")
    sub.add_recv("hear", "$HEARD", to="box", require="reached")
    main = GraphBuilder("main")
    main.add_subroutine("listen", sub.build())
    main.add_call("c", "listen", outputs=[("$STATUS", "$S")], require="reached")
    verdict = run(main.build())
    assert verdict.bindings == {"S": "listening"}
    assert verdict.states["c"] == "complete"
    assert [ref.path for ref in verdict.unmet] == ["c/hear"]


def test_requirement_inside_uncalled_subroutine():
    sub = GraphBuilder("later")
    sub.add_bind("inner", "$A", 1, require="reached")
    main = GraphBuilder("main")
    main.declare_dummy("box")
    main.add_subroutine("later", sub.build())
    main.add_recv("wait", "$W", to="box")
    main.add_call("c", "later", after=["wait"])
    verdict = run(main.build())
    assert verdict.status is Status.FAIL
    assert verdict.states["c/inner"] == "pending"
    assert _codes(verdict) == ["CH-5003"]
    assert "later" in verdict.diagnostics[0].message


def test_nested_calls_use_path_prefixes():
    leaf = GraphBuilder("leaf")
    leaf.add_bind("set", "$V", "$IN")
    middle = GraphBuilder("middle")
    middle.add_subroutine("leaf", leaf.build())
    middle.add_call("inner", "leaf", inputs=[("$IN", "$IN")], outputs=[("$V", "$V")])
    main = GraphBuilder("main")
    main.add_subroutine("middle", middle.build())
    main.add_call("outer", "middle", inputs=[("hi", "$IN")], outputs=[("$V", "$FINAL")], require="reached")
    verdict = run(main.build())
    assert verdict.ok
    assert verdict.bindings == {"FINAL": "hi"}
    assert verdict.states["outer/inner/set"] == "complete"


def test_runs_are_deterministic(builder):
    builder.declare_actor("svc")
    builder.declare_dummy("box")
    builder.add_bind("b", "$X", {"k": [1, 2]})
    builder.add_send("s1", "$X", target="svc")
    builder.add_send("s2", "two", target="box")
    builder.add_recv("r1", "$ECHO", source="svc")
    builder.add_recv("r2", "$TWO", to="box")
    builder.add_delay("d", 2)
    graph = builder.build()
    first = run(graph, LoopbackTransport().actor("svc", echo_actor)).to_dict()
    second = run(graph, LoopbackTransport().actor("svc", echo_actor)).to_dict()
    assert first == second
    assert first["status"] == "pass"


def test_trace_can_be_disabled(builder):
    builder.add_bind("b", "$X", 1)
    verdict = run(builder.build(), record_trace=False)
    assert verdict.trace == []


def test_run_async_inside_running_loop(builder):
    builder.add_bind("b", "$X", 1, require="reached")

    async def scenario():
        return await run_async(builder.build())

    verdict = asyncio.run(scenario())
    assert verdict.ok


def test_scheduler_state_after_run(builder):
    builder.add_bind("b", "$X", 1)
    scheduler = Scheduler(builder.build())
    asyncio.run(scheduler.run())
    assert scheduler.root.runtime[0].state is NodeState.COMPLETE
    assert scheduler.frames == [scheduler.root]


def test_recv_on_undeclared_mailbox_does_not_abort(builder):
    builder.add_bind("x", "$X", 1)
    builder.add_recv("r", "$M", to="client")
    verdict = run(builder.build())
    assert verdict.error is None
    assert verdict.states == {"x": "complete", "r": "ready_incomplete"}
    assert verdict.bindings == {"X": 1}


def test_send_and_recv_without_declared_participants(builder):
    builder.add_send("s", {"n": 1}, target="client")
    builder.add_recv("r", {"n": "$N"}, to="client", require="reached")
    verdict = run(builder.build())
    assert verdict.ok
    assert verdict.bindings == {"N": 1}


def test_recv_gives_up_after_timeout(builder):
    builder.declare_dummy("box")
    builder.add_recv("r", "$M", to="box", timeout=2, require="reached")
    builder.add_bind("after", "$A", 1, after=["r"])
    verdict = run(builder.build())
    assert verdict.status is Status.FAIL
    assert verdict.ticks == 2
    assert verdict.states == {"r": "ready_incomplete", "after": "pending"}
    timeout = next(entry for entry in verdict.trace if entry.outcome == "timeout")
    assert timeout.node == "r"
    assert timeout.tick == 2
    assert _codes(verdict) == ["CH-5001"]
    assert verdict.diagnostics[0].hint == "timed out after 2 tick(s)"


def test_recv_completes_before_its_timeout(builder):
    def slow_echo(ctx, message):
        ctx.send(message.payload, to=message.sender, after=1)

    builder.declare_actor("svc")
    builder.add_send("ask", "hello", target="svc")
    builder.add_recv("reply", "$R", source="svc", timeout=3, require="reached")
    verdict = run(builder.build(), LoopbackTransport().actor("svc", slow_echo))
    assert verdict.ok
    assert verdict.ticks == 1
    assert verdict.bindings == {"R": "hello"}
    assert not any(entry.outcome == "timeout" for entry in verdict.trace)


def test_call_maps_caller_dummy_onto_subroutine_dummy():
    sub = GraphBuilder("serve", source="sub.yaml").declare_dummy("worker")
    sub.add_recv("job", "$JOB", to="worker", require="reached")
    main = GraphBuilder("main", source="main.yaml").declare_dummy("client")
    main.add_subroutine("serve", sub.build())
    main.add_send("post", {"n": 1}, target="client")
    main.add_call("c", "serve", outputs=[("$JOB", "$GOT")], dummies={"client": "worker"}, require="reached")
    verdict = run(main.build())
    assert verdict.ok
    assert verdict.bindings == {"GOT": {"n": 1}}
    assert verdict.states["c/job"] == "complete"
    assert verdict.diagnostics == []


def test_scheduled_messages_that_never_arrive_are_reported(builder):
    def late_echo(ctx, message):
        ctx.send(message.payload, to=message.sender, after=5)

    builder.declare_actor("svc")
    builder.add_send("ask", "hi", target="svc")
    verdict = run(builder.build(), LoopbackTransport().actor("svc", late_echo))
    assert verdict.status is Status.PASS
    assert verdict.ticks == 0
    assert _codes(verdict) == ["CH-5102"]
    diag = verdict.diagnostics[0]
    assert diag.severity == "info"
    assert diag.last_seen == "hi"
    assert "'*'" in diag.message


class LaterTransport(Transport):
    """Answers every request from the event loop a little later."""

    def dispatch(self, message):
        reply = Message(
            sender=message.target,
            target=message.sender,
            correlation_id=message.correlation_id,
            payload=message.payload,
            reply_to=message.correlation_id,
        )
        asyncio.get_running_loop().call_later(0.01, self.push, message.sender, reply)


def test_scheduler_waits_for_asynchronous_delivery(builder):
    builder.declare_dummy("client")
    builder.declare_actor("svc")
    builder.add_send("ask", {"q": 1}, sender="client", target="svc")
    builder.add_recv("answer", {"q": "$Q"}, source="svc", to="client", require="reached")
    verdict = run(builder.build(), LaterTransport(idle_timeout=0.5))
    assert verdict.ok
    assert verdict.bindings == {"Q": 1}
    assert verdict.ticks == 0


class BrokenTransport(Transport):
    def __init__(self, code):
        super().__init__(idle_timeout=0.0)
        self.code = code

    def dispatch(self, message):
        raise TransportError("link down", code=self.code)


@pytest.mark.parametrize("raised, reported", [("CH-4002", "CH-4002"), ("CH-4999", "CH-4001"), (None, "CH-4001")])
def test_fatal_diagnostic_keeps_registered_error_code(builder, raised, reported):
    builder.add_send("s", "hi", target="svc")
    verdict = run(builder.build(), BrokenTransport(raised))
    assert verdict.status is Status.FAIL
    assert verdict.error.code == raised
    assert _codes(verdict) == [reported]
    assert verdict.diagnostics[0].message == "Run aborted: link down"
