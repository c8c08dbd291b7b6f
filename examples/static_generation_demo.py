"""
Static generation example - compile a decoder for a fixed-shape device and stream tokens.
"""

import time

import torch
import staticllm


def main():
    print("="*60)
    print("StaticLLM Generation Demo")
    print("="*60)

    # Create a model
    print("\n1. Creating a small decoder-only model...")
    torch.manual_seed(0)
    model = staticllm.CausalLM(vocab_size=64, hidden_dim=32, num_heads=2, num_layers=2)

    # Probe the device
    print("\n2. Probing the device...")
    staticllm.print_hardware_info()

    # Compile prefill and generate graphs
    print("\n3. Compiling static prefill/generate graphs...")
    start = time.time()
    pipe = staticllm.StaticLLMPipeline(
        model,
        config={"MAX_PROMPT_LEN": 64, "MIN_RESPONSE_LEN": 32, "GENERATE_HINT": "BEST_PERF"},
    )
    print(f"   Compiled in {time.time() - start:.2f}s")
    print(f"   Prompt capacity: {pipe.artifact.max_prompt_len}")
    print(f"   KV cache capacity: {pipe.artifact.kvcache_total}")

    # Generate with streaming
    print("\n4. Generating...")
    prompt = [5, 9, 17, 3]

    def on_token(token_id):
        print(f"   token {token_id}")

    config = staticllm.GenerationConfig(max_new_tokens=8)
    result = pipe.generate(prompt, config, streamer=on_token)

    print("\n5. Results")
    print(f"   Tokens: {result.tokens[0]}")
    print(f"   Log-probability: {result.scores[0]:.3f}")
    print(f"   Status: {result.status.value}")
    metrics = result.perf_metrics
    print(f"   TTFT: {metrics.ttft:.2f}ms, TPOT: {metrics.tpot:.2f}ms")

    print("\n" + "="*60)
    print("Done")
    print("="*60)


if __name__ == "__main__":
    main()
