"""Example running a two-step lead follow-up workflow in one process.

Uses in-memory storage and a canned pydantic-ai ``FunctionModel`` so it runs
without a database, Redis or model credentials. Swap the model for a real one
(``PydanticAICompletionService("openai:gpt-4o")``) to talk to a provider.
"""

import asyncio

from pydantic_ai.messages import ModelResponse, TextPart
from pydantic_ai.models.function import FunctionModel

from agentloom import (
    Agent,
    AgentloomConfig,
    PydanticAICompletionService,
    Step,
    StepCondition,
    WorkflowDefinition,
    build_services,
)


def canned_model(messages, info) -> ModelResponse:
    prompt = messages[-1].parts[-1].content
    if prompt.startswith("Score"):
        return ModelResponse(parts=[TextPart(content='{"leadScore": 91}')])
    return ModelResponse(parts=[TextPart(content="Hi Acme, following up on pricing.")])


async def main():
    services = build_services(
        AgentloomConfig(),
        completion=PydanticAICompletionService(FunctionModel(canned_model)),
    )

    await services.repository.save_agent(Agent(id="scorer", name="Scorer", status="active"))
    await services.repository.save_agent(Agent(id="writer", name="Writer", status="active"))
    await services.repository.save_workflow(
        WorkflowDefinition(
            id="lead-followup",
            name="Lead follow-up",
            status="active",
            steps=[
                Step(id="score", agent_id="scorer", action="Score {{leadName}}", on_success="draft"),
                Step(
                    id="draft",
                    agent_id="writer",
                    action="Draft an email to {{leadName}}",
                    conditions=[StepCondition(field="leadScore", operator="gt", value=80)],
                ),
            ],
        )
    )

    execution = await services.engine.execute("lead-followup", {"leadName": "Acme"})

    print(f"Execution {execution.id} finished: {execution.status.value}")
    for step_id, result in execution.step_results.items():
        print(f"  {step_id}: {result.status.value}")
    print(execution.context["draft_result"])


if __name__ == "__main__":
    asyncio.run(main())
