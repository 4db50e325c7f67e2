"""Instruction messages sent to Claude for each agent phase."""

from collections.abc import Callable

from .errors import UnknownAgentTypeError
from .models import AgentType

PLANIFICATION_TEMPLATE = """\
@agent-Plan You are helping me plan the implementation of a task. Your goal is to create a \
comprehensive onboarding document that any developer can use to complete this task.

## Your Process

### 1. Explore the Codebase
Explore the codebase to understand:
- Current implementation patterns
- Relevant files and components
- Testing patterns used in the project

### 2. Ask Clarifying Questions (Major Decisions Only)
Before creating any plan, ask me ONLY about significant decisions that would substantially \
impact the implementation.

**Do ask about:**
- Major architectural or design decisions with multiple valid approaches
- Ambiguous requirements that could be interpreted in fundamentally different ways
- Potential flaws or challenges in the requirements that need resolution
- Trade-offs that require user input (e.g., performance vs. simplicity)

**Do NOT ask about:**
- Implementation details you can reasonably infer from the codebase
- Edge cases that have standard solutions
- Minor UI/UX details unless they're core to the feature
- Technical choices where there's an obvious best practice

Group your questions into a single, focused set (2-4 questions maximum). Do NOT proceed to \
planning until you have received answers.

### 3. Create the Implementation Plan
After gathering all information, update the task documentation file at:
`{task_doc_path}`

Structure the document as an onboarding guide for a new developer with these sections:

#### Overview
- Summary of what this task accomplishes
- Initial user request and context
- Key decisions made during planning

#### Implementation Plan
- Phase-by-phase breakdown with clear steps
- Files to modify/create for each phase
- Technical approach and architecture decisions

#### Testing Strategy
- **Unit Tests**: specific unit tests to create or update
- **Manual Testing**: scenarios with navigation steps and expected behavior

#### To-Do List
Track progress with checkboxes. Include ALL steps:

**Implementation:**
- [ ] Phase 1: [description]
- [ ] Phase 2: [description]

**Testing:**
- [ ] Unit test: [test description]
- [ ] Manual: [scenario description]

When the plan is written, mark planning as done:
```bash
taskloop complete-plan {task_id}
```

Please start by asking your clarifying questions."""

IMPLEMENTATION_TEMPLATE = """\
@agent-Implement Read the task documentation at `{task_doc_path}` and implement the next \
unchecked phase from the To-Do List.

## Instructions
1. Read the task documentation file
2. Check if a "Review Findings" section exists
   - If it does, pay special attention to documented issues
   - Address any issues from the previous review first
3. Find the To-Do List section
4. Identify the first unchecked item ([ ])
5. Implement that specific phase following the plan
6. Mark the item as completed ([x]) when done
7. Do NOT ask any questions - proceed directly with implementation

## Workflow Completion
After implementing, check if ALL To-Do items (both Implementation and Testing sections) are \
now marked as complete [x].

Start implementing now."""

REVIEW_TEMPLATE = """\
@agent-Review You are a code reviewer for a task implementation. Your goal is to verify the \
implementation of completed items against the task documentation and update the docs with \
your findings.

## Your Process

### 1. Read Task Documentation
Read the task documentation at `{task_doc_path}` to understand:
- What was supposed to be implemented
- The testing strategy defined
- Items marked as completed ([x]) in the To-Do List

### 2. Review Implementation
For each recently completed item (marked [x]):
- Verify the code changes match what was planned
- Check for any gaps or missing functionality
- Identify any issues or potential bugs

### 3. Run Unit Tests
Run the project's unit tests and report any failures.

### 4. Manual Testing
Follow the manual testing scenarios from the Testing Strategy section and document any \
failures or unexpected behavior.

### 5. Evaluate Completion Status
If some To-Do items are still unchecked, complete your report with findings on the \
completed items and instruct the implementation agent to continue.

If every item is checked, decide whether the feature is **READY** or **NEEDS_WORK**.

**READY** - all unit tests pass, all manual scenarios pass, no implementation issues, and \
ALL To-Do items are marked complete [x].

**NEEDS_WORK** - any test failure, manual testing issue, implementation gap, or unchecked item.

### 6. Update Task Documentation
Update `{task_doc_path}`. The "Review Findings" section must reflect ONLY the current state: \
REPLACE it entirely, never append.

#### If NEEDS_WORK:
1. Replace the "Review Findings" section with:

```markdown
## Review Findings

**Status:** NEEDS_WORK

### Unit Tests
- Result: [PASS/FAIL]
- Failures: [list any test failures]

### Manual Testing
- [x] Scenario 1: [PASS - description]
- [ ] Scenario 2: [FAIL - what went wrong]

### Issues to Address
- [List specific issues that need fixing]
```

2. Mark the failed item as unchecked in the To-Do List so the implementation agent retries it.

#### If READY:
Run the completion command to stop the automated agent loop:
```bash
taskloop complete-workflow {task_id}
```

## Important Constraints
- Do NOT fix any code or specs - only document findings
- Do NOT implement anything - only review and test
- ALWAYS REPLACE (never append to) the Review Findings section

Start reviewing now."""


def generate_planification_message(task_doc_path: str, task_id: int) -> str:
    return PLANIFICATION_TEMPLATE.format(task_doc_path=task_doc_path, task_id=task_id)


def generate_implementation_message(task_doc_path: str, task_id: int) -> str:
    return IMPLEMENTATION_TEMPLATE.format(task_doc_path=task_doc_path, task_id=task_id)


def generate_review_message(task_doc_path: str, task_id: int) -> str:
    return REVIEW_TEMPLATE.format(task_doc_path=task_doc_path, task_id=task_id)


_GENERATORS: dict[AgentType, Callable[[str, int], str]] = {
    AgentType.PLANIFICATION: generate_planification_message,
    AgentType.IMPLEMENTATION: generate_implementation_message,
    AgentType.REVIEW: generate_review_message,
}


def parse_agent_type(value: str | AgentType) -> AgentType:
    try:
        return AgentType(value)
    except ValueError as exc:
        raise UnknownAgentTypeError(value) from exc


def message_for(agent_type: str | AgentType, task_doc_path: str, task_id: int) -> str:
    """Instruction message for a phase; raises UnknownAgentTypeError otherwise."""
    return _GENERATORS[parse_agent_type(agent_type)](task_doc_path, task_id)
