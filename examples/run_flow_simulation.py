"""Example: simulate the order intake flow against stand-in services."""
import json
from pathlib import Path

from stepgraph.config import Settings
from stepgraph.services.http import HttpResponse
from stepgraph.services.registry import register_service
from stepgraph.workflow.compiler import load_workflow
from stepgraph.workflow.executor import FlowExecutor
from stepgraph.workflow.simulator import FlowSimulator

FLOW = Path(__file__).parent / "flows" / "order_intake.yaml"


@register_service("http.request")
def fake_http(method, url, *, headers=None, body=None, data=None, files=None):
    print(f"  -> {method} {url} {body or ''}")
    if method == "GET":
        payload = {"value": [{"id": "C-7", "street": "1 Main St", "city": "Oslo"}]}
    else:
        payload = {"orderId": f"O-{json.loads(body)['sku']}"}
    return HttpResponse(status_code=200, text=json.dumps(payload))


@register_service("email.send")
def fake_email(to, subject, body, cc=None, from_address=None):
    print(f"  -> email to {to}: {subject!r} / {body!r}")


def main():
    settings = Settings(api_base_url="https://api.example.test", log_level="WARNING")
    settings.setup_logging()

    workflow = load_workflow(FLOW.read_text())
    simulator = FlowSimulator(workflow, FlowExecutor.from_workflow(workflow, settings), user_id="demo")

    state = simulator.initial_state()
    state = simulator.set_field(state, "customerName", "Ada")
    state = simulator.set_field(state, "email", "ada@example.test")
    state = simulator.submit(state)
    print("Page:", state.current_page, "header:", simulator.page_header(state, "address"))
    print("Prefilled:", {k: state.form_data[k] for k in ("street", "city")})

    state = simulator.submit(state)
    state = simulator.set_row_field(state, "items", 0, "sku", "A-1")
    state = simulator.add_row(state, "items")
    state = simulator.set_row_field(state, "items", 1, "sku", "B-2")
    state = simulator.submit(state)
    print("Prompt:", state.pending_confirmation["confirmationData"]["promptMessage"])

    state = simulator.respond(state, True)
    print("Status:", state.status.value, "-", (state.exit_state or state.result))


if __name__ == "__main__":
    main()
