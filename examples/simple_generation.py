#!/usr/bin/env python3
"""
Simple Generation Example
=========================

Generate a reference image, three chained 8-second segments and the
crossfaded final video.
"""

import asyncio
import os

from clipchain import FailurePolicy, JobRequest, PipelineOrchestrator, TransitionSpec


async def main():
    """Three-segment lighthouse clip."""

    if not os.getenv("GOOGLE_API_KEY"):
        print("Please set GOOGLE_API_KEY environment variable")
        return

    job = JobRequest(
        job_id="lighthouse-example",
        image_prompt="A white lighthouse on a rocky cliff at dusk, cinematic, 35mm",
        segment_prompts=[
            "Slow push-in on the lighthouse as waves crash below",
            "The lamp flickers on and its beam sweeps over the sea",
            "The camera pulls back as night falls over the coast",
        ],
        transition=TransitionSpec.from_config("fade", 0.5),
        policy=FailurePolicy.BEST_EFFORT,
    )

    print("=== Simple Generation ===")
    print(f"Segments: {len(job.segment_prompts)}")

    async with PipelineOrchestrator.from_config() as orchestrator:
        result = await orchestrator.run(job)

    print(f"\nOutcome: {result.outcome.value}")
    if result.output_path:
        print(f"Video: {result.output_path} ({result.achieved_duration:.1f}s)")
    for outcome in result.segment_outcomes:
        if outcome["status"] == "failed":
            print(f"Segment {outcome['index']} skipped: {outcome['error']}")
    if result.error:
        print(f"Error: {result.error}")
    print(f"Total cost: ${result.total_cost:.2f}")


if __name__ == "__main__":
    asyncio.run(main())
