import argparse
import logging
from copy import deepcopy

from ctf_ma_env import GameController, PickleModelStore, TEAM_STRATEGIES, task_presets
from ctf_ma_env.renderer import render_world


def main():
    parser = argparse.ArgumentParser(description="Run capture-the-flag episodes with DQN or scripted agents.")
    parser.add_argument("--task", type=str, default="classic", choices=list(task_presets().keys()))
    parser.add_argument("--episodes", type=int, default=5)
    parser.add_argument("--scripted", action="store_true", help="Play scripted role policies instead of training.")
    parser.add_argument("--strategy", type=str, default="BALANCED", choices=sorted(TEAM_STRATEGIES))
    parser.add_argument("--async_training", action="store_true", help="Fit Q-networks on a background worker.")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--save_dir", type=str, default=None, help="Optional directory to save agent models to.")
    parser.add_argument("--load", action="store_true", help="Load agent models from --save_dir before running.")
    parser.add_argument("--render_every", type=int, default=0, help="If >0, render the arena every N episodes.")
    parser.add_argument("--log_level", type=str, default="INFO")
    args = parser.parse_args()

    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(name)s %(levelname)s %(message)s")

    config = deepcopy(task_presets()[args.task].controller_config)
    config.seed = args.seed
    config.async_training = args.async_training
    if args.save_dir:
        config.model_dir = args.save_dir
    controller = GameController(config)

    if args.load and not controller.load_agents():
        print(f"No usable models in {config.model_dir}; starting fresh.")

    if args.scripted:
        controller.set_pretrained_mode(True, args.strategy)
        controller.start()
    else:
        controller.train(args.episodes)

    # Drive the tick loop until the requested number of episodes has finished.
    try:
        while controller.episode_count < args.episodes:
            result = controller.update()
            if result is None or not result.done:
                continue
            ep = controller.episode_count
            rewards = controller.metrics.episode_rewards[-1]
            print(
                f"Episode {ep}/{args.episodes}: red={result.info['red_score']} blue={result.info['blue_score']} "
                f"steps={result.info['episode_length']} reward_red={rewards['red']:.2f} "
                f"reward_blue={rewards['blue']:.2f}"
            )
            if args.render_every and ep % args.render_every == 0:
                print(render_world(controller.env.world))
        controller.wait_for_training()
    finally:
        controller.close()

    metrics = controller.get_performance_metrics()
    print(
        f"Done: red_win_rate={metrics['red_win_rate']:.2f} blue_win_rate={metrics['blue_win_rate']:.2f} "
        f"draws={controller.metrics.draws}"
    )
    if args.save_dir:
        controller.save_agents()


if __name__ == "__main__":
    main()
